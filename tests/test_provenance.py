"""Tests for manifest building, signing, embedding and verification."""

from __future__ import annotations

import hashlib
import json

import cbor2
import pytest

from capturetrust.errors import ManifestError
from capturetrust.models import EvidencePackage, Fail, Pass, ProcessingInfo, Unavailable
from capturetrust.provenance import (
    CaptureManifest,
    Ed25519ManifestSigner,
    ManifestBuilder,
    ManifestVerifier,
    SigningError,
    embed_manifest,
    extract_manifest,
    sign_cose,
)
from capturetrust.provenance.embed import (
    JPEG_APP11,
    PNG_MANIFEST_CHUNK,
    build_jumbf,
    detect_format,
    embed_jpeg,
    embed_png,
    extract_jpeg,
    has_manifest_container,
    parse_jumbf,
)
from capturetrust.provenance.manifest import ACTIONS_LABEL, EVIDENCE_LABEL, HASH_DATA_LABEL
from capturetrust.provenance.signing import PRIVATE_KEY_ENV, PUBLIC_KEY_ENV, generate_keys, keys_to_env_format
from capturetrust.provenance.verifier import decode_sign1
from factories import sample_jpeg, sample_png

PROCESSING = ProcessingInfo(processed_at="2026-03-01T12:00:00+00:00", processing_time_ms=40, version="0.3.0")


def _evidence(scene=None) -> EvidencePackage:
    return EvidencePackage(
        hardware_attestation=Pass({"assertion_verified": True}),
        scene_analysis=scene or Pass({"depth_layers": 5}),
        metadata=Pass({"model_verified": True}),
        processing=PROCESSING,
    )


def _signed(signer, media: bytes, evidence: EvidencePackage | None = None) -> tuple[CaptureManifest, bytes]:
    manifest = ManifestBuilder().build(
        evidence or _evidence(),
        hashlib.sha256(media).hexdigest(),
        instance_id="xmp:iid:test",
    )
    return manifest, sign_cose(manifest.to_bytes(), signer)


class TestManifestBuilder:
    """Test the manifest claim shape."""

    def test_assertions(self):
        manifest = ManifestBuilder().build(_evidence(), "ab" * 32, instance_id="xmp:iid:1")
        labels = [a["label"] for a in manifest.assertions]
        assert labels == [ACTIONS_LABEL, HASH_DATA_LABEL, EVIDENCE_LABEL]
        assert all(label.startswith("capturetrust.") for label in labels)
        assert manifest.media_hash == "ab" * 32
        assert manifest.confidence == "high"
        assert manifest.claim_generator.startswith("capturetrust/")

    def test_evidence_round_trip(self):
        evidence = _evidence(Unavailable("depth data missing"))
        manifest = ManifestBuilder().build(evidence, "00" * 32)
        restored = CaptureManifest.from_dict(json.loads(manifest.to_bytes()))
        assert restored.evidence() == evidence
        assert restored.confidence == "medium"

    def test_canonical_bytes_are_sorted(self):
        manifest = ManifestBuilder().build(_evidence(), "00" * 32, instance_id="xmp:iid:1")
        text = manifest.to_bytes().decode()
        assert text.index('"assertions"') < text.index('"claim_generator"')
        assert " " not in text.split('"when"')[0]

    def test_missing_field(self):
        with pytest.raises(ManifestError):
            CaptureManifest.from_dict({"title": "x"})

    def test_missing_assertion(self):
        manifest = CaptureManifest("g", "t", "image/jpeg", "iid", assertions=[])
        with pytest.raises(ManifestError):
            _ = manifest.media_hash


class TestSigner:
    """Test the Ed25519 signer and its key sources."""

    def test_env_key(self, monkeypatch):
        private, public = generate_keys()
        private_b64, public_b64 = keys_to_env_format(private, public)
        monkeypatch.setenv(PRIVATE_KEY_ENV, private_b64)
        monkeypatch.setenv(PUBLIC_KEY_ENV, public_b64)
        assert Ed25519ManifestSigner().public_key == public

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv(PRIVATE_KEY_ENV, raising=False)
        with pytest.raises(SigningError):
            Ed25519ManifestSigner()

    def test_mismatched_public_key(self, monkeypatch):
        private, _ = generate_keys()
        _, other_public = generate_keys()
        monkeypatch.setenv(PUBLIC_KEY_ENV, keys_to_env_format(private, other_public)[1])
        with pytest.raises(SigningError):
            Ed25519ManifestSigner(private)

    def test_invalid_base64(self, monkeypatch):
        monkeypatch.setenv(PRIVATE_KEY_ENV, "not base64!!")
        with pytest.raises(SigningError):
            Ed25519ManifestSigner()

    def test_wrong_length(self):
        with pytest.raises(SigningError):
            Ed25519ManifestSigner(b"short")

    def test_cose_structure(self, signer):
        cose = sign_cose(b"payload", signer)
        tag = cbor2.loads(cose)
        assert tag.tag == 18
        protected, unprotected, payload, signature = tag.value
        assert cbor2.loads(protected) == {1: -8, 4: signer.public_key}
        assert payload == b"payload"
        assert len(signature) == 64

    def test_signer_failure_wrapped(self):
        class BrokenSigner(Ed25519ManifestSigner):
            def sign(self, message):
                raise RuntimeError("hsm offline")

        with pytest.raises(SigningError, match="hsm offline"):
            sign_cose(b"payload", BrokenSigner(generate_keys()[0]))


class TestJumbf:
    """Test the JUMBF manifest store container."""

    def test_build_and_parse(self):
        jumbf = build_jumbf(b"\xd2cose", "urn:uuid:1234")
        assert jumbf[4:8] == b"jumb"
        assert b"capturetrust" in jumbf
        assert b"c2pa" not in jumbf
        assert parse_jumbf(jumbf) == ("urn:uuid:1234", b"\xd2cose")

    def test_not_a_store(self):
        with pytest.raises(ManifestError):
            parse_jumbf(b"\x00\x00\x00\x0cjumbabcd")

    def test_truncated(self):
        jumbf = build_jumbf(b"cose", "label")
        with pytest.raises(ManifestError):
            parse_jumbf(jumbf[:-3])


class TestEmbedding:
    """Test container embedding keeps original bytes recoverable."""

    def test_detect_format(self):
        assert detect_format(sample_jpeg()) == "image/jpeg"
        assert detect_format(sample_png()) == "image/png"
        assert detect_format(b"RIFF....WEBP") == "application/octet-stream"

    def test_jpeg_round_trip(self):
        original = sample_jpeg()
        embedded, flag = embed_manifest(original, b"cose bytes", "urn:uuid:a")
        assert flag
        assert embedded[:2] == b"\xff\xd8"
        assert embedded[2:4] == bytes([0xFF, JPEG_APP11])
        assert embedded.endswith(original[2:])
        extracted = extract_manifest(embedded)
        assert extracted.original == original
        assert extracted.cose == b"cose bytes"
        assert extracted.label == "urn:uuid:a"

    def test_large_manifest_spans_segments(self):
        original = sample_jpeg()
        cose = bytes(range(256)) * 600
        embedded = embed_jpeg(original, build_jumbf(cose, "big"))
        assert embedded.count(b"\xff\xeb") >= 3
        jumbf, recovered = extract_jpeg(embedded)
        assert recovered == original
        assert parse_jumbf(jumbf) == ("big", cose)

    def test_png_round_trip(self):
        original = sample_png()
        embedded, flag = embed_manifest(original, b"cose bytes", "urn:uuid:b")
        assert flag
        assert embedded.index(PNG_MANIFEST_CHUNK) < embedded.index(b"IDAT")
        extracted = extract_manifest(embedded)
        assert extracted.original == original
        assert extracted.cose == b"cose bytes"

    def test_png_crc_checked(self):
        embedded, _ = embed_manifest(sample_png(), b"cose bytes", "urn:uuid:b")
        corrupted = embedded.replace(b"cose bytes", b"cose bytez")
        with pytest.raises(ManifestError, match="CRC"):
            extract_manifest(corrupted)

    def test_existing_manifest_refused(self):
        jpeg, _ = embed_manifest(sample_jpeg(), b"first", "a")
        with pytest.raises(ManifestError):
            embed_jpeg(jpeg, build_jumbf(b"second", "b"))
        png, _ = embed_manifest(sample_png(), b"first", "a")
        with pytest.raises(ManifestError):
            embed_png(png, build_jumbf(b"second", "b"))

    @pytest.mark.parametrize("media", [sample_jpeg(), sample_png()])
    def test_existing_manifest_kept_as_sidecar(self, media):
        embedded, _ = embed_manifest(media, b"first", "a")
        assert has_manifest_container(embedded)
        assert not has_manifest_container(media)
        assert embed_manifest(embedded, b"second", "b") == (embedded, False)
        assert extract_manifest(embedded).cose == b"first"

    def test_foreign_jumbf_segment_kept_as_sidecar(self):
        foreign = b"JP" + bytes([0, 1, 0, 0, 0, 1]) + b"\x00\x00\x00\x08jumb"
        media = sample_jpeg()
        media = media[:2] + b"\xff\xeb" + (len(foreign) + 2).to_bytes(2, "big") + foreign + media[2:]
        assert embed_manifest(media, b"cose", "x") == (media, False)

    def test_unsupported_format_is_sidecar(self):
        media = b"\x00\x00\x00\x18ftypheic"
        assert embed_manifest(media, b"cose", "x") == (media, False)
        with pytest.raises(ManifestError):
            extract_manifest(media)

    def test_media_without_manifest(self):
        with pytest.raises(ManifestError):
            extract_manifest(sample_jpeg())


class TestVerifier:
    """Test signature, hash and confidence verification."""

    def test_valid_manifest(self, signer):
        media = sample_jpeg()
        _, cose = _signed(signer, media)
        result = ManifestVerifier(signer.public_key).verify_cose(cose, hashlib.sha256(media).hexdigest())
        assert result.valid
        assert result.signature_valid
        assert result.hash_valid
        assert result.confidence == "high"
        assert result.kid == signer.public_key.hex()

    def test_embedded_media_verifies(self, signer):
        media = sample_jpeg()
        _, cose = _signed(signer, media)
        embedded, _ = embed_manifest(media, cose, "urn:uuid:c")
        result = ManifestVerifier(signer.public_key).verify_media(embedded)
        assert result.valid
        assert result.to_dict()["manifest"]["instance_id"] == "xmp:iid:test"

    def test_pixel_tampering_detected(self, signer):
        media = sample_jpeg(b"scan data")
        _, cose = _signed(signer, media)
        embedded, _ = embed_manifest(media, cose, "urn:uuid:c")
        tampered = embedded.replace(b"scan data", b"scan dat4")
        result = ManifestVerifier(signer.public_key).verify_media(tampered)
        assert not result.valid
        assert result.signature_valid
        assert result.hash_valid is False

    def test_wrong_key(self, signer):
        _, cose = _signed(signer, sample_jpeg())
        other = Ed25519ManifestSigner.generate()
        result = ManifestVerifier(other.public_key).verify_cose(cose)
        assert not result.valid
        assert result.signature_valid is False

    def test_payload_tampering_detected(self, signer):
        _, cose = _signed(signer, sample_jpeg())
        tag = cbor2.loads(cose)
        protected, unprotected, payload, signature = tag.value
        forged = payload.replace(b'"high"', b'"low"')
        tampered = cbor2.dumps(cbor2.CBORTag(18, [protected, unprotected, forged, signature]))
        result = ManifestVerifier(signer.public_key).verify_cose(tampered)
        assert not result.valid
        assert "Signature verification failed" in result.errors

    def test_inconsistent_confidence_rejected(self, signer):
        """Test that a signed manifest overstating confidence is invalid."""
        manifest, _ = _signed(signer, sample_jpeg(), _evidence(Fail({"depth_layers": 1})))
        data = manifest.to_dict()
        for item in data["assertions"]:
            if item["label"] == EVIDENCE_LABEL:
                item["data"]["confidence"] = "high"
        cose = sign_cose(CaptureManifest.from_dict(data).to_bytes(), signer)
        result = ManifestVerifier(signer.public_key).verify_cose(cose)
        assert result.signature_valid
        assert not result.valid
        assert "does not follow from the evidence" in result.errors[0]

    def test_tag_contents_decoded_as_tuple(self, signer, monkeypatch):
        """Test verification when the CBOR decoder yields tag contents as a tuple."""
        media = sample_jpeg()
        _, cose = _signed(signer, media)
        loads = cbor2.loads

        def tuple_loads(data, **kwargs):
            obj = loads(data, **kwargs)
            if isinstance(obj, cbor2.CBORTag):
                return cbor2.CBORTag(obj.tag, tuple(obj.value))
            return obj

        monkeypatch.setattr(cbor2, "loads", tuple_loads)
        result = ManifestVerifier(signer.public_key).verify_cose(cose, hashlib.sha256(media).hexdigest())
        assert result.valid
        assert result.signature_valid

    def test_untagged_sign1_rejected(self, signer):
        _, cose = _signed(signer, sample_jpeg())
        untagged = cbor2.dumps(list(cbor2.loads(cose).value))
        with pytest.raises(ValueError, match="not a tagged COSE_Sign1"):
            decode_sign1(untagged)
        result = ManifestVerifier(signer.public_key).verify_cose(untagged)
        assert not result.valid
        assert result.errors[0].startswith("Invalid COSE_Sign1 message")

    def test_garbage_cose(self, signer):
        result = ManifestVerifier(signer.public_key).verify_cose(b"not cose")
        assert not result.valid
        assert result.errors

    def test_public_key_length(self):
        with pytest.raises(ManifestError):
            ManifestVerifier(b"\x00" * 31)

    def test_markdown_report(self, signer):
        media = sample_jpeg()
        _, cose = _signed(signer, media)
        result = ManifestVerifier(signer.public_key).verify_cose(cose)
        report = result.to_markdown()
        assert report.startswith("# Manifest Verification Report")
        assert "**Status:** VALID" in report
        assert "- **Media Hash Valid:** Not checked" in report
        assert "- **scene_analysis:** pass" in report
