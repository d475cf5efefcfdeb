"""Signed manifest verification for tamper detection."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import cbor2
from pycose.headers import KID
from pycose.keys import OKPKey
from pycose.messages import Sign1Message

from capturetrust.errors import ManifestError
from capturetrust.models import ConfidenceLevel
from capturetrust.provenance.embed import extract_manifest
from capturetrust.provenance.manifest import CaptureManifest
from capturetrust.provenance.signing import COSE_SIGN1_TAG


@dataclass
class ManifestVerificationResult:
    """Result of manifest verification."""

    valid: bool
    signature_valid: bool | None = None
    hash_valid: bool | None = None
    manifest: CaptureManifest | None = None
    confidence: str | None = None
    kid: str | None = None
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "valid": self.valid,
            "signature_valid": self.signature_valid,
            "hash_valid": self.hash_valid,
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "confidence": self.confidence,
            "kid": self.kid,
            "errors": self.errors,
            "timestamp": self.timestamp,
        }

    def to_markdown(self) -> str:
        lines = [
            "# Manifest Verification Report",
            "",
            f"**Status:** {'VALID' if self.valid else 'INVALID'}",
            f"**Timestamp:** {self.timestamp}",
            "",
            "## Summary",
            "",
            f"- **Signature Valid:** {_yes_no(self.signature_valid)}",
            f"- **Media Hash Valid:** {_yes_no(self.hash_valid)}",
        ]
        if self.confidence:
            lines.append(f"- **Confidence:** {self.confidence}")
        if self.kid:
            lines.append(f"- **Signing Key:** `{self.kid}`")
        lines.append("")

        if self.manifest:
            lines.extend(["## Evidence", ""])
            for category, result in sorted(self.manifest.evidence_data.items()):
                if category == "processing":
                    continue
                lines.append(f"- **{category}:** {result.get('status')}")
            lines.append("")

        if self.errors:
            lines.extend(["## Errors", ""])
            for error in self.errors:
                lines.append(f"- {error}")
            lines.append("")

        return "\n".join(lines)


def decode_sign1(cose: bytes) -> Sign1Message:
    """Decode a tagged COSE_Sign1 message.

    cbor2 6 returns tag contents as a tuple, which
    ``Sign1Message.decode`` does not accept, so the tag is unwrapped here.
    """
    tag = cbor2.loads(cose)
    if not isinstance(tag, cbor2.CBORTag) or tag.tag != COSE_SIGN1_TAG:
        raise ValueError("not a tagged COSE_Sign1 message")
    if not isinstance(tag.value, (list, tuple)) or len(tag.value) != 4:
        raise ValueError("COSE_Sign1 must be a 4-element array")
    return Sign1Message.from_cose_obj(list(tag.value), True)


def _yes_no(value: bool | None) -> str:
    if value is None:
        return "Not checked"
    return "Yes" if value else "No"


class ManifestVerifier:
    """Verifier for signed capture manifests."""

    def __init__(self, public_key: bytes) -> None:
        if len(public_key) != 32:
            raise ManifestError(f"Ed25519 public key must be 32 bytes, got {len(public_key)}")
        self.public_key = public_key

    def verify_cose(self, cose: bytes, media_sha256: str | None = None) -> ManifestVerificationResult:
        """Verify a COSE_Sign1 manifest.

        Args:
            cose: Tagged COSE_Sign1 bytes
            media_sha256: Hash of the original media; when given it must match
                the manifest's hard binding

        Returns:
            ManifestVerificationResult
        """
        result = ManifestVerificationResult(valid=False)

        try:
            msg = decode_sign1(cose)
        except Exception as e:
            result.errors.append(f"Invalid COSE_Sign1 message: {e}")
            return result

        kid = msg.phdr.get(KID)
        if kid:
            result.kid = bytes(kid).hex()
            if not hmac.compare_digest(bytes(kid), self.public_key):
                result.signature_valid = False
                result.errors.append("Key identifier does not match the trusted public key")
                return result

        msg.key = OKPKey.from_dict({1: 1, -1: 6, -2: self.public_key})
        try:
            result.signature_valid = bool(msg.verify_signature())
        except Exception as e:
            result.signature_valid = False
            result.errors.append(f"Signature verification error: {e}")
            return result
        if not result.signature_valid:
            result.errors.append("Signature verification failed")
            return result

        try:
            manifest = CaptureManifest.from_dict(json.loads(msg.payload or b""))
            result.manifest = manifest
            result.confidence = manifest.confidence
            evidence = manifest.evidence()
            stated = ConfidenceLevel(manifest.confidence)
        except (ManifestError, ValueError, KeyError, TypeError) as e:
            result.errors.append(f"Invalid manifest payload: {e}")
            return result

        if evidence.confidence is not stated:
            result.errors.append(
                f"Stated confidence {result.confidence} does not follow from the evidence "
                f"({evidence.confidence.value})"
            )
            return result

        if media_sha256 is not None:
            result.hash_valid = hmac.compare_digest(manifest.media_hash, media_sha256)
            if not result.hash_valid:
                result.errors.append("Media hash mismatch - media may have been modified")
                return result

        result.valid = True
        return result

    def verify_media(self, media: bytes) -> ManifestVerificationResult:
        """Verify media carrying an embedded manifest."""
        try:
            extracted = extract_manifest(media)
        except ManifestError as e:
            return ManifestVerificationResult(valid=False, errors=[str(e)])
        return self.verify_cose(extracted.cose, hashlib.sha256(extracted.original).hexdigest())
