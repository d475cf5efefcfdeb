"""Tests for registration attestation and per-capture assertions."""

from __future__ import annotations

import datetime as dt
import hashlib

import cbor2
import pytest

from capturetrust.attestation import (
    AttestationVerifier,
    CaptureAssertionVerifier,
    cose_key_to_point,
    decode_envelope,
    extract_nonce,
    format_capture_time,
    load_root_certificates,
    validate_chain,
)
from capturetrust.challenges import ChallengeStore
from capturetrust.errors import AttestationMalformed, DeviceAlreadyRegistered, SubmissionMalformed
from capturetrust.models import AttestationLevel, CaptureMetadata, CheckStatus, Device
from capturetrust.store import Database, DeviceStore
from factories import APP_ID, AttestationAuthority, DeviceKey, nonce_extension


@pytest.fixture
def db():
    database = Database()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return DeviceStore(db)


@pytest.fixture
def challenges(db, clock):
    return ChallengeStore(db, clock=lambda: clock().timestamp())


@pytest.fixture
def verifier(store, challenges, authority, clock):
    return AttestationVerifier(store, challenges, APP_ID, roots=[authority.root], clock=clock)


def _register(verifier, attestation, key, challenge, device_id="device-1"):
    return verifier.register(device_id, attestation, key.public_bytes, challenge, model="iPhone 15 Pro", request_id="req-1")


class TestEnvelopeDecoding:
    """Test hard rejection of undecodable envelopes."""

    @pytest.mark.parametrize(
        "blob",
        [
            b"\xff\x00garbage",
            cbor2.dumps([1, 2, 3]),
            cbor2.dumps({"fmt": "packed", "attStmt": {}, "authData": b""}),
            cbor2.dumps({"fmt": "apple-appattest", "attStmt": {"x5c": []}, "authData": b"x" * 60}),
            cbor2.dumps({"fmt": "apple-appattest", "attStmt": {"x5c": [b"not der"]}, "authData": b"x" * 60}),
        ],
    )
    def test_malformed_envelopes(self, blob):
        with pytest.raises(AttestationMalformed):
            decode_envelope(blob)

    def test_truncated_auth_data(self, authority, device_key):
        envelope = cbor2.loads(authority.attest(device_key, b"c" * 32))
        envelope["authData"] = envelope["authData"][:40]
        with pytest.raises(AttestationMalformed):
            decode_envelope(cbor2.dumps(envelope))

    def test_decoded_fields(self, authority, device_key):
        envelope = decode_envelope(authority.attest(device_key, b"c" * 32))
        assert envelope.fmt == "apple-appattest"
        assert len(envelope.certificates) == 2
        assert envelope.auth_data.counter == 0
        assert envelope.auth_data.credential_public_key == device_key.public_bytes

    def test_certificate_chain_as_tuple(self, authority, device_key, monkeypatch):
        """Test that a decoder yielding CBOR arrays as tuples is accepted."""
        blob = authority.attest(device_key, b"c" * 32)
        loads = cbor2.loads

        def tuple_loads(data, **kwargs):
            obj = loads(data, **kwargs)
            if isinstance(obj, dict) and "attStmt" in obj:
                obj["attStmt"]["x5c"] = tuple(obj["attStmt"]["x5c"])
            return obj

        monkeypatch.setattr(cbor2, "loads", tuple_loads)
        envelope = decode_envelope(blob)
        assert len(envelope.certificates) == 2

    def test_cose_key_rejects_wrong_curve(self):
        with pytest.raises(ValueError):
            cose_key_to_point(cbor2.dumps({1: 2, -1: 2, -2: b"x" * 32, -3: b"y" * 32}))


class TestNonce:
    """Test nonce extraction from the leaf certificate."""

    def test_extracts_nonce(self, authority, device_key):
        nonce = hashlib.sha256(b"n").digest()
        envelope = decode_envelope(authority.attest(device_key, b"c" * 32, nonce=nonce))
        assert extract_nonce(envelope.certificates[0]) == nonce

    def test_missing_extension(self, authority):
        with pytest.raises(ValueError):
            extract_nonce(authority.root)

    def test_extension_encoding(self):
        ext = nonce_extension(b"\x01" * 32)
        assert ext.value[:2] == b"\x30\x24"


class TestChain:
    """Test chain validation against pinned roots."""

    def test_valid_chain(self, authority, device_key, clock):
        envelope = decode_envelope(authority.attest(device_key, b"c" * 32))
        assert validate_chain(envelope.certificates, [authority.root], clock()) is None

    def test_no_roots(self, authority, device_key, clock):
        envelope = decode_envelope(authority.attest(device_key, b"c" * 32))
        assert validate_chain(envelope.certificates, [], clock()) == "no pinned root certificates configured"

    def test_expired_certificates(self, authority, device_key):
        envelope = decode_envelope(authority.attest(device_key, b"c" * 32))
        later = dt.datetime(2040, 1, 1, tzinfo=dt.UTC)
        assert "outside validity period" in validate_chain(envelope.certificates, [authority.root], later)

    def test_load_root_pem(self, authority, tmp_path):
        path = tmp_path / "roots.pem"
        path.write_bytes(authority.root_pem)
        assert load_root_certificates(path) == [authority.root]
        assert load_root_certificates(authority.root_pem) == [authority.root]


class TestRegistration:
    """Test registration outcomes."""

    def test_valid_attestation_is_hardware_verified(self, verifier, challenges, authority, device_key, store):
        challenge = challenges.issue().value
        outcome = _register(verifier, authority.attest(device_key, challenge), device_key, challenge)
        assert outcome.verified
        assert outcome.reasons == []
        device = store.get("device-1")
        assert device.attestation_level is AttestationLevel.HARDWARE_VERIFIED
        assert device.public_key == device_key.public_bytes
        assert device.counter == 0
        assert outcome.to_dict() == {"device_id": "device-1", "attestation_level": "hardware_verified", "reasons": []}

    def test_untrusted_root_downgrades(self, verifier, challenges, device_key):
        challenge = challenges.issue().value
        rogue = AttestationAuthority(not_before=dt.datetime(2025, 1, 1, tzinfo=dt.UTC), days=3650)
        outcome = _register(verifier, rogue.attest(device_key, challenge), device_key, challenge)
        assert outcome.level is AttestationLevel.UNVERIFIED
        assert any("untrusted certificate chain" in r for r in outcome.reasons)

    def test_app_identity_mismatch(self, verifier, challenges, authority, device_key):
        challenge = challenges.issue().value
        attestation = authority.attest(device_key, challenge, rp_id_hash=hashlib.sha256(b"other").digest())
        outcome = _register(verifier, attestation, device_key, challenge)
        assert "app identity mismatch" in outcome.reasons

    def test_challenge_single_use(self, verifier, challenges, authority, device_key):
        challenge = challenges.issue().value
        assert _register(verifier, authority.attest(device_key, challenge), device_key, challenge).verified
        outcome = _register(verifier, authority.attest(device_key, challenge), device_key, challenge, device_id="device-2")
        assert outcome.reasons == ["challenge unknown, expired or already used"]

    def test_expired_challenge(self, verifier, challenges, authority, device_key, clock):
        challenge = challenges.issue().value
        clock.advance(301)
        outcome = _register(verifier, authority.attest(device_key, challenge), device_key, challenge)
        assert "challenge unknown, expired or already used" in outcome.reasons

    def test_wrong_nonce(self, verifier, challenges, authority, device_key):
        challenge = challenges.issue().value
        attestation = authority.attest(device_key, challenge, nonce=b"\x00" * 32)
        outcome = _register(verifier, attestation, device_key, challenge)
        assert outcome.reasons == ["nonce does not match challenge"]

    def test_claimed_key_mismatch(self, verifier, challenges, authority, device_key, store):
        challenge = challenges.issue().value
        other = DeviceKey()
        attestation = authority.attest(device_key, challenge, credential_key=other)
        outcome = _register(verifier, attestation, device_key, challenge)
        assert "attested key does not match claimed key" in outcome.reasons
        # Unverified devices keep the key they claimed
        assert store.get("device-1").public_key == device_key.public_bytes

    def test_nonzero_initial_counter(self, verifier, challenges, authority, device_key):
        challenge = challenges.issue().value
        outcome = _register(verifier, authority.attest(device_key, challenge, counter=4), device_key, challenge)
        assert outcome.reasons == ["initial counter is 4, expected 0"]

    def test_malformed_envelope_rejected(self, verifier, challenges, device_key, store):
        challenge = challenges.issue().value
        with pytest.raises(AttestationMalformed):
            _register(verifier, b"\x00\x01", device_key, challenge)
        assert store.get("device-1") is None
        assert store.audit_entries(request_id="req-1")[0]["code"] == "ATTESTATION_MALFORMED"

    def test_bad_claimed_key_rejected(self, verifier, challenges, authority, device_key, store):
        challenge = challenges.issue().value
        with pytest.raises(SubmissionMalformed):
            verifier.register("device-1", authority.attest(device_key, challenge), b"\x04" + b"\x00" * 64, challenge)
        assert store.get("device-1") is None

    def test_registration_audited(self, verifier, challenges, authority, device_key, store):
        challenge = challenges.issue().value
        _register(verifier, authority.attest(device_key, challenge, counter=1), device_key, challenge)
        entry = store.audit_entries(request_id="req-1")[0]
        assert entry["event"] == "register"
        assert entry["outcome"] == "unverified"


class TestReregistration:
    """Test registering a device id that already exists."""

    @pytest.fixture
    def enrolled(self, verifier, challenges, authority, device_key, store):
        challenge = challenges.issue().value
        assert _register(verifier, authority.attest(device_key, challenge), device_key, challenge).verified
        store.admit("device-1", 5, "req-0", "00" * 32)
        return store.get("device-1")

    def test_unverified_attestation_cannot_replace_key(self, verifier, challenges, enrolled, store):
        intruder = DeviceKey()
        challenge = challenges.issue().value
        rogue = AttestationAuthority(not_before=dt.datetime(2025, 1, 1, tzinfo=dt.UTC), days=3650)
        with pytest.raises(DeviceAlreadyRegistered) as exc_info:
            _register(verifier, rogue.attest(intruder, challenge), intruder, challenge)
        assert exc_info.value.code.http_status == 409

        device = store.get("device-1")
        assert device.public_key == enrolled.public_key
        assert device.attestation_level is AttestationLevel.HARDWARE_VERIFIED
        assert device.counter == 5
        assert store.audit_entries(request_id="req-1")[-1]["code"] == "DEVICE_ALREADY_REGISTERED"

    def test_verified_new_key_restarts_counter(self, verifier, challenges, authority, enrolled, store):
        new_key = DeviceKey()
        challenge = challenges.issue().value
        outcome = _register(verifier, authority.attest(new_key, challenge), new_key, challenge)
        assert outcome.verified
        assert outcome.device.public_key == new_key.public_bytes
        assert outcome.device.counter == 0

    def test_verified_same_key_keeps_counter(self, verifier, challenges, authority, device_key, enrolled):
        challenge = challenges.issue().value
        outcome = _register(verifier, authority.attest(device_key, challenge), device_key, challenge)
        assert outcome.verified
        assert outcome.device.counter == 5


class TestCaptureAssertion:
    """Test the hardware_attestation category decision."""

    @pytest.fixture
    def capture_verifier(self):
        return CaptureAssertionVerifier(APP_ID)

    def _device(self, key, level=AttestationLevel.HARDWARE_VERIFIED):
        return Device(device_id="device-1", public_key=key.public_bytes, attestation_level=level, model="iPhone 15 Pro")

    def _metadata(self, assertion):
        return CaptureMetadata(
            captured_at=dt.datetime(2026, 3, 1, 11, 59, 55, 123456, tzinfo=dt.UTC),
            device_model="iPhone 15 Pro",
            assertion=assertion,
        )

    def test_valid_assertion_passes(self, capture_verifier, device_key):
        media_sha = hashlib.sha256(b"media").hexdigest()
        metadata = self._metadata(None)
        metadata = self._metadata(device_key.sign_capture(media_sha, metadata.captured_at, counter=9))
        result = capture_verifier.check(self._device(device_key), metadata, media_sha)
        assert result.status is CheckStatus.PASS
        assert result.metrics["assertion_counter"] == 9

    def test_media_hash_is_bound(self, capture_verifier, device_key):
        metadata = self._metadata(None)
        assertion = device_key.sign_capture(hashlib.sha256(b"media").hexdigest(), metadata.captured_at)
        result = capture_verifier.check(
            self._device(device_key), self._metadata(assertion), hashlib.sha256(b"edited").hexdigest()
        )
        assert result.status is CheckStatus.FAIL
        assert result.metrics["error"] == "signature invalid"

    def test_missing_assertion_unavailable(self, capture_verifier, device_key):
        result = capture_verifier.check(self._device(device_key), self._metadata(None), "00")
        assert result.status is CheckStatus.UNAVAILABLE

    def test_unverified_device_unavailable(self, capture_verifier, device_key):
        metadata = self._metadata(b"anything")
        result = capture_verifier.check(self._device(device_key, AttestationLevel.UNVERIFIED), metadata, "00")
        assert result.status is CheckStatus.UNAVAILABLE
        assert result.reason == "device key is not hardware verified"

    def test_undecodable_assertion_fails(self, capture_verifier, device_key):
        result = capture_verifier.check(self._device(device_key), self._metadata(b"junk"), "00")
        assert result.status is CheckStatus.FAIL


class TestCaptureTime:
    """Test the capture time format bound into assertions."""

    def test_millisecond_precision_utc(self):
        value = dt.datetime(2026, 3, 1, 13, 0, 0, 987654, tzinfo=dt.timezone(dt.timedelta(hours=1)))
        assert format_capture_time(value) == "2026-03-01T12:00:00.987Z"

    def test_zero_padding(self):
        assert format_capture_time(dt.datetime(2026, 1, 2, 3, 4, 5, 7000, tzinfo=dt.UTC)) == "2026-01-02T03:04:05.007Z"
