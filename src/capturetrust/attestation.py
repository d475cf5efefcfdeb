"""Hardware attestation verification.

Registration receives an App Attest style envelope (CBOR)::

    {"fmt": "apple-appattest",
     "attStmt": {"x5c": [leaf_der, intermediate_der, ...], "receipt": bytes},
     "authData": bytes}

Only an envelope that cannot be decoded is a hard rejection. Every later
verification step that fails downgrades the device to ``unverified`` and
records the reason.

Per capture, a lighter assertion signed by the same key binds the media
hash and capture time; it decides the ``hardware_attestation`` category.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import cbor2
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ObjectIdentifier

from capturetrust.auth import load_public_key, parse_assertion, verify_p256
from capturetrust.challenges import ChallengeStore
from capturetrust.errors import AttestationMalformed, DeviceAlreadyRegistered, RejectionCode, SubmissionMalformed
from capturetrust.models import AttestationLevel, CaptureMetadata, CheckResult, Device, Fail, Pass, Unavailable
from capturetrust.store import DeviceStore

logger = logging.getLogger(__name__)

APPATTEST_FORMAT = "apple-appattest"
NONCE_EXTENSION_OID = ObjectIdentifier("1.2.840.113635.100.8.2")

# rpIdHash(32) + flags(1) + counter(4) + aaguid(16) + credIdLen(2)
ATTESTED_AUTH_DATA_MIN_LENGTH = 55
FLAG_ATTESTED_CREDENTIAL = 0x40

# COSE_Key labels
COSE_KTY = 1
COSE_ALG = 3
COSE_EC2_CRV = -1
COSE_EC2_X = -2
COSE_EC2_Y = -3
COSE_KTY_EC2 = 2
COSE_CRV_P256 = 1
COSE_ALG_ES256 = -7


@dataclass(frozen=True)
class AttestedAuthData:
    """Authenticator data carrying an attested credential."""

    rp_id_hash: bytes
    flags: int
    counter: int
    aaguid: bytes
    credential_id: bytes
    credential_public_key: bytes


@dataclass(frozen=True)
class AttestationEnvelope:
    """Decoded registration envelope."""

    fmt: str
    certificates: list[x509.Certificate]
    auth_data_raw: bytes
    auth_data: AttestedAuthData
    receipt: bytes = b""


@dataclass
class AttestationOutcome:
    """Result of registration attestation."""

    device: Device
    level: AttestationLevel
    reasons: list[str] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return self.level is AttestationLevel.HARDWARE_VERIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device.device_id,
            "attestation_level": self.level.value,
            "reasons": list(self.reasons),
        }


def parse_attested_auth_data(data: bytes) -> AttestedAuthData:
    """Parse authenticator data with an attested credential.

    Layout: rpIdHash(32) flags(1) counter(4) aaguid(16) credIdLen(2)
    credentialId(L) credentialPublicKey(COSE).

    Raises:
        ValueError: If the data is truncated or the key is not a COSE EC2 P-256 key
    """
    if len(data) < ATTESTED_AUTH_DATA_MIN_LENGTH:
        raise ValueError(f"authData too short: {len(data)} bytes, expected at least {ATTESTED_AUTH_DATA_MIN_LENGTH}")

    rp_id_hash = data[0:32]
    flags = data[32]
    (counter,) = struct.unpack(">I", data[33:37])
    aaguid = data[37:53]
    (cred_len,) = struct.unpack(">H", data[53:55])
    if len(data) < ATTESTED_AUTH_DATA_MIN_LENGTH + cred_len:
        raise ValueError("authData too short for credential id")
    credential_id = data[55:55 + cred_len]
    key_bytes = data[55 + cred_len:]
    if not key_bytes:
        raise ValueError("authData is missing the credential public key")

    return AttestedAuthData(
        rp_id_hash=rp_id_hash,
        flags=flags,
        counter=counter,
        aaguid=aaguid,
        credential_id=credential_id,
        credential_public_key=cose_key_to_point(key_bytes),
    )


def cose_key_to_point(cose_key: bytes) -> bytes:
    """Convert a COSE EC2 P-256 key to an uncompressed SEC1 point."""
    try:
        key = cbor2.loads(cose_key)
    except Exception as err:  # cbor2 raises several unrelated types on garbage input
        raise ValueError(f"credential public key is not CBOR: {err}") from err
    if not isinstance(key, dict):
        raise ValueError("credential public key is not a COSE_Key map")
    if key.get(COSE_KTY) != COSE_KTY_EC2 or key.get(COSE_EC2_CRV) != COSE_CRV_P256:
        raise ValueError("credential public key is not EC2 P-256")
    if COSE_ALG in key and key[COSE_ALG] != COSE_ALG_ES256:
        raise ValueError(f"unsupported COSE algorithm {key[COSE_ALG]}")
    x, y = key.get(COSE_EC2_X), key.get(COSE_EC2_Y)
    if not isinstance(x, bytes) or not isinstance(y, bytes) or len(x) != 32 or len(y) != 32:
        raise ValueError("credential public key coordinates must be 32 bytes")
    return b"\x04" + x + y


def decode_envelope(blob: bytes) -> AttestationEnvelope:
    """Decode a registration envelope.

    Raises:
        AttestationMalformed: If any part cannot be decoded
    """
    try:
        obj = cbor2.loads(blob)
    except Exception as err:  # cbor2 raises several unrelated types on garbage input
        raise AttestationMalformed(f"Attestation is not valid CBOR: {err}") from err
    if not isinstance(obj, dict):
        raise AttestationMalformed("Attestation must be a CBOR map")

    fmt = obj.get("fmt")
    if fmt != APPATTEST_FORMAT:
        raise AttestationMalformed(f"Unsupported attestation format: {fmt!r}")

    stmt = obj.get("attStmt")
    auth_data = obj.get("authData")
    if not isinstance(stmt, dict) or not isinstance(auth_data, bytes):
        raise AttestationMalformed("Attestation is missing attStmt or authData")

    x5c = stmt.get("x5c")
    if not isinstance(x5c, (list, tuple)) or not x5c or not all(isinstance(c, bytes) for c in x5c):
        raise AttestationMalformed("attStmt.x5c must be a non-empty list of DER certificates")
    try:
        certificates = [x509.load_der_x509_certificate(der) for der in x5c]
    except ValueError as err:
        raise AttestationMalformed(f"Invalid certificate in x5c: {err}") from err

    try:
        parsed = parse_attested_auth_data(auth_data)
    except ValueError as err:
        raise AttestationMalformed(f"Invalid authData: {err}") from err

    receipt = stmt.get("receipt", b"")
    return AttestationEnvelope(
        fmt=fmt,
        certificates=certificates,
        auth_data_raw=auth_data,
        auth_data=parsed,
        receipt=receipt if isinstance(receipt, bytes) else b"",
    )


def _read_der(data: bytes, offset: int) -> tuple[int, bytes, int]:
    """Read one DER TLV. Returns (tag, value, next_offset)."""
    if offset + 2 > len(data):
        raise ValueError("truncated DER")
    tag = data[offset]
    length = data[offset + 1]
    offset += 2
    if length & 0x80:
        num = length & 0x7F
        if num == 0 or num > 4 or offset + num > len(data):
            raise ValueError("unsupported DER length")
        length = int.from_bytes(data[offset:offset + num], "big")
        offset += num
    if offset + length > len(data):
        raise ValueError("truncated DER value")
    return tag, data[offset:offset + length], offset + length


def _leaf_point(certificate: x509.Certificate) -> bytes | None:
    key = certificate.public_key()
    if not isinstance(key, ec.EllipticCurvePublicKey):
        return None
    return key.public_bytes(serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint)


def extract_nonce(certificate: x509.Certificate) -> bytes:
    """Extract the attestation nonce: SEQUENCE { [1] EXPLICIT OCTET STRING }.

    Raises:
        ValueError: If the extension is absent or malformed
    """
    try:
        ext = certificate.extensions.get_extension_for_oid(NONCE_EXTENSION_OID)
    except x509.ExtensionNotFound as err:
        raise ValueError("leaf certificate has no nonce extension") from err
    if not isinstance(ext.value, x509.UnrecognizedExtension):
        raise ValueError("unexpected nonce extension type")

    tag, seq, _ = _read_der(ext.value.value, 0)
    if tag != 0x30:
        raise ValueError("nonce extension is not a SEQUENCE")
    offset = 0
    while offset < len(seq):
        tag, value, offset = _read_der(seq, offset)
        if tag == 0xA1:
            inner_tag, nonce, _ = _read_der(value, 0)
            if inner_tag != 0x04:
                raise ValueError("nonce is not an OCTET STRING")
            return nonce
    raise ValueError("nonce extension has no [1] element")


def load_root_certificates(source: str | Path | bytes) -> list[x509.Certificate]:
    """Load a pinned root bundle from a PEM/DER file or bytes."""
    data = source if isinstance(source, bytes) else Path(source).read_bytes()
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificates(data)
    return [x509.load_der_x509_certificate(data)]


def validate_chain(
    chain: list[x509.Certificate],
    roots: list[x509.Certificate],
    at: datetime,
) -> str | None:
    """Validate a leaf-first chain against pinned roots.

    Returns None when valid, otherwise the reason.
    """
    if not roots:
        return "no pinned root certificates configured"

    for cert in chain:
        if not cert.not_valid_before_utc <= at <= cert.not_valid_after_utc:
            return f"certificate {cert.subject.rfc4514_string()} outside validity period"

    for child, parent in zip(chain, chain[1:]):
        try:
            child.verify_directly_issued_by(parent)
        except (ValueError, TypeError, InvalidSignature):
            return f"certificate {child.subject.rfc4514_string()} not issued by next certificate in chain"

    top = chain[-1]
    for root in roots:
        if top == root:
            return None
        try:
            top.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature):
            continue
        if not root.not_valid_before_utc <= at <= root.not_valid_after_utc:
            return "pinned root outside validity period"
        return None
    return "chain does not terminate at a pinned root"


class AttestationVerifier:
    """Verifies registration attestations and records the device."""

    def __init__(
        self,
        store: DeviceStore,
        challenges: ChallengeStore,
        app_id: str,
        roots: list[x509.Certificate] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.challenges = challenges
        self.app_id = app_id
        self.expected_rp_id_hash = hashlib.sha256(app_id.encode()).digest()
        self.roots = list(roots or [])
        self._clock = clock

    def register(
        self,
        device_id: str,
        attestation: bytes,
        claimed_public_key: bytes,
        challenge: bytes,
        model: str = "",
        request_id: str = "",
    ) -> AttestationOutcome:
        """Verify an attestation and create or update the device record.

        An existing device keeps its key unless the new attestation is
        fully verified.

        Raises:
            AttestationMalformed: If the envelope cannot be decoded
            SubmissionMalformed: If the claimed key is not a P-256 point
            DeviceAlreadyRegistered: If an unverified attestation targets a known device
        """
        try:
            load_public_key(claimed_public_key)
        except ValueError as err:
            self._audit_rejection(request_id, device_id, "SUBMISSION_MALFORMED")
            raise SubmissionMalformed(f"Claimed public key is not a P-256 point: {err}") from err

        try:
            envelope = decode_envelope(attestation)
        except AttestationMalformed as err:
            logger.warning(
                "Attestation rejected: %s",
                err.message,
                extra={"request_id": request_id, "device_id": device_id},
            )
            self._audit_rejection(request_id, device_id, err.code.value)
            raise

        reasons = self._soft_checks(envelope, claimed_public_key, challenge)
        level = AttestationLevel.UNVERIFIED if reasons else AttestationLevel.HARDWARE_VERIFIED
        public_key = envelope.auth_data.credential_public_key if not reasons else claimed_public_key

        for reason in reasons:
            logger.warning(
                "Attestation downgraded: %s",
                reason,
                extra={"request_id": request_id, "device_id": device_id},
            )

        device = self.store.upsert_registration(
            device_id=device_id,
            public_key=public_key,
            level=level,
            reason="; ".join(reasons) or None,
            model=model,
            initial_counter=0 if reasons else envelope.auth_data.counter,
            replace=level is AttestationLevel.HARDWARE_VERIFIED,
        )
        if device is None:
            logger.warning(
                "Unverified re-registration refused",
                extra={"request_id": request_id, "device_id": device_id},
            )
            self._audit_rejection(request_id, device_id, RejectionCode.DEVICE_ALREADY_REGISTERED.value)
            raise DeviceAlreadyRegistered(
                f"Device {device_id} is already registered; re-registration requires a verified attestation",
                {"reasons": "; ".join(reasons)},
            )
        self.store.record_attempt(
            request_id=request_id,
            device_id=device_id,
            event="register",
            outcome=level.value,
            detail={"reasons": "; ".join(reasons)} if reasons else None,
        )
        return AttestationOutcome(device=device, level=level, reasons=reasons)

    def _soft_checks(self, envelope: AttestationEnvelope, claimed_public_key: bytes, challenge: bytes) -> list[str]:
        reasons: list[str] = []
        auth = envelope.auth_data

        chain_error = validate_chain(envelope.certificates, self.roots, self._clock())
        if chain_error:
            reasons.append(f"untrusted certificate chain: {chain_error}")

        if not hmac.compare_digest(auth.rp_id_hash, self.expected_rp_id_hash):
            reasons.append("app identity mismatch")

        # Always consumed, so a challenge never outlives one registration attempt
        if not self.challenges.consume(challenge):
            reasons.append("challenge unknown, expired or already used")

        expected_nonce = hashlib.sha256(envelope.auth_data_raw + hashlib.sha256(challenge).digest()).digest()
        try:
            nonce = extract_nonce(envelope.certificates[0])
        except ValueError as err:
            reasons.append(f"nonce unavailable: {err}")
        else:
            if not hmac.compare_digest(nonce, expected_nonce):
                reasons.append("nonce does not match challenge")

        if _leaf_point(envelope.certificates[0]) != auth.credential_public_key:
            reasons.append("leaf certificate key does not match attested credential")

        if auth.credential_public_key != claimed_public_key:
            reasons.append("attested key does not match claimed key")
        elif auth.credential_id and auth.credential_id != hashlib.sha256(claimed_public_key).digest():
            reasons.append("credential id is not the hash of the attested key")

        if auth.counter != 0:
            reasons.append(f"initial counter is {auth.counter}, expected 0")

        return reasons

    def _audit_rejection(self, request_id: str, device_id: str, code: str) -> None:
        self.store.record_attempt(
            request_id=request_id,
            device_id=device_id,
            event="register",
            outcome="rejected",
            code=code,
        )


def format_capture_time(captured_at: datetime) -> str:
    """ISO 8601 UTC with millisecond precision and a ``Z`` suffix."""
    utc = captured_at.astimezone(UTC)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def capture_client_data_hash(media_sha256: str, captured_at: datetime) -> bytes:
    """Binding signed by the per-capture assertion."""
    return hashlib.sha256(f"{media_sha256}|{format_capture_time(captured_at)}".encode()).digest()


class CaptureAssertionVerifier:
    """Decides the hardware_attestation category for one capture."""

    def __init__(self, app_id: str) -> None:
        self.expected_rp_id_hash = hashlib.sha256(app_id.encode()).digest()

    def check(self, device: Device, metadata: CaptureMetadata, media_sha256: str) -> CheckResult:
        metrics: dict[str, Any] = {
            "attestation_level": device.attestation_level.value,
            "device_model": device.model,
        }
        if not metadata.assertion:
            return Unavailable("no capture assertion supplied", metrics)
        if not device.is_hardware_verified:
            return Unavailable("device key is not hardware verified", metrics)

        try:
            assertion = parse_assertion(metadata.assertion)
        except ValueError as err:
            logger.info("Capture assertion undecodable: %s", err)
            return Fail({**metrics, "assertion_verified": False, "error": "undecodable assertion"})

        if not hmac.compare_digest(assertion.rp_id_hash, self.expected_rp_id_hash):
            return Fail({**metrics, "assertion_verified": False, "error": "app identity mismatch"})

        message = assertion.authenticator_data + capture_client_data_hash(media_sha256, metadata.captured_at)
        if not verify_p256(device.public_key, assertion.signature, message):
            return Fail({**metrics, "assertion_verified": False, "error": "signature invalid"})

        return Pass({**metrics, "assertion_verified": True, "assertion_counter": assertion.counter})
