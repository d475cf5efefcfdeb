"""Request authentication and anti-replay.

A request signature is a CBOR map ``{"authenticatorData": bytes,
"signature": bytes}``. The authenticator data is
``rpIdHash (32) || flags (1) || counter (4, big-endian)``; the signature is a
DER-encoded ECDSA P-256/SHA-256 signature over
``authenticatorData || SHA256("<timestamp_ms>|<body_sha256_hex>")``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NoReturn

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from capturetrust.errors import (
    AdmissionRejected,
    AuthExpired,
    AuthInvalidSignature,
    AuthReplayDetected,
    AuthUnknownDevice,
)
from capturetrust.models import Device
from capturetrust.store import DeviceStore

logger = logging.getLogger(__name__)

AUTH_DATA_MIN_LENGTH = 37


@dataclass(frozen=True)
class Assertion:
    """Decoded assertion: authenticator data plus signature."""

    authenticator_data: bytes
    signature: bytes

    @property
    def rp_id_hash(self) -> bytes:
        return self.authenticator_data[:32]

    @property
    def flags(self) -> int:
        return self.authenticator_data[32]

    @property
    def counter(self) -> int:
        return struct.unpack(">I", self.authenticator_data[33:37])[0]


def parse_assertion(blob: bytes) -> Assertion:
    """Decode a CBOR assertion.

    Raises:
        ValueError: If the blob is not a well-formed assertion
    """
    try:
        decoded = cbor2.loads(blob)
    except Exception as err:  # cbor2 raises several unrelated types on garbage input
        raise ValueError(f"assertion is not valid CBOR: {err}") from err
    if not isinstance(decoded, dict):
        raise ValueError("assertion must be a CBOR map")
    auth_data = decoded.get("authenticatorData")
    signature = decoded.get("signature")
    if not isinstance(auth_data, bytes) or not isinstance(signature, bytes):
        raise ValueError("assertion is missing authenticatorData or signature")
    if len(auth_data) < AUTH_DATA_MIN_LENGTH:
        raise ValueError(f"authenticatorData too short ({len(auth_data)} bytes)")
    return Assertion(authenticator_data=auth_data, signature=signature)


def load_public_key(public_key: bytes) -> ec.EllipticCurvePublicKey:
    """Load an uncompressed SEC1 P-256 point."""
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), public_key)


def verify_p256(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Verify an ECDSA P-256/SHA-256 signature (DER, or raw r||s)."""
    if len(signature) == 64 and signature[0] != 0x30:
        signature = encode_dss_signature(
            int.from_bytes(signature[:32], "big"),
            int.from_bytes(signature[32:], "big"),
        )
    try:
        load_public_key(public_key).verify(signature, message, ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        return False
    return True


def client_data_hash(timestamp_ms: int, body_hash: str) -> bytes:
    """Hash binding the request timestamp to the request body."""
    return hashlib.sha256(f"{timestamp_ms}|{body_hash}".encode()).digest()


def _now_ms() -> int:
    return int(time.time() * 1000)


class SignatureAuthenticator:
    """Admits or rejects signed device requests.

    Checks run in a fixed order: known device, timestamp window, signature,
    counter. Every attempt is written to the audit log before the counter
    is touched.
    """

    def __init__(
        self,
        store: DeviceStore,
        tolerance_ms: int = 300_000,
        app_id: str | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.tolerance_ms = tolerance_ms
        self.expected_rp_id_hash = hashlib.sha256(app_id.encode()).digest() if app_id else None
        self._clock = clock

    def authenticate(
        self,
        device_id: str,
        timestamp_ms: int,
        signature: bytes,
        body_hash: str,
        request_id: str,
    ) -> Device:
        """Authenticate one request and advance the device counter.

        Returns:
            The device record after the counter advance

        Raises:
            AuthUnknownDevice, AuthExpired, AuthInvalidSignature, AuthReplayDetected
        """
        logger.info(
            "Authenticating request",
            extra={"request_id": request_id, "device_id": device_id},
        )

        device = self.store.get(device_id)
        if device is None:
            self._reject(AuthUnknownDevice(f"Unknown device {device_id}"), request_id, device_id)

        server_ms = self._clock()
        delta_ms = server_ms - timestamp_ms
        if abs(delta_ms) > self.tolerance_ms:
            self._reject(
                AuthExpired(
                    "Request timestamp outside tolerance window",
                    {"delta_ms": delta_ms, "tolerance_ms": self.tolerance_ms},
                ),
                request_id,
                device_id,
            )

        try:
            assertion = parse_assertion(signature)
        except ValueError as err:
            self._reject(AuthInvalidSignature(f"Undecodable request signature: {err}"), request_id, device_id)

        if self.expected_rp_id_hash is not None and not hmac.compare_digest(
            assertion.rp_id_hash, self.expected_rp_id_hash
        ):
            self._reject(AuthInvalidSignature("Assertion bound to a different app identity"), request_id, device_id)

        message = assertion.authenticator_data + client_data_hash(timestamp_ms, body_hash)
        if not verify_p256(device.public_key, assertion.signature, message):
            self._reject(AuthInvalidSignature("Request signature does not verify"), request_id, device_id)

        counter = assertion.counter
        if counter <= device.counter:
            self._reject(
                AuthReplayDetected(
                    "Counter did not increase",
                    {"counter": counter, "stored_counter": device.counter},
                ),
                request_id,
                device_id,
            )

        updated = self.store.admit(device_id, counter, request_id, body_hash)
        if updated is None:
            self._reject(
                AuthReplayDetected("Counter already consumed by a concurrent request", {"counter": counter}),
                request_id,
                device_id,
            )

        logger.info(
            "Request admitted with counter %d",
            counter,
            extra={"request_id": request_id, "device_id": device_id},
        )
        return updated

    def _reject(self, error: AdmissionRejected, request_id: str, device_id: str | None) -> NoReturn:
        logger.warning(
            "Request rejected: %s (%s)",
            error.code.value,
            error.message,
            extra={"request_id": request_id, "device_id": device_id},
        )
        self.store.record_attempt(
            request_id=request_id,
            device_id=device_id,
            event="authenticate",
            outcome="rejected",
            code=error.code.value,
            detail=_jsonable(error.details),
        )
        raise error


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in details.items() if isinstance(v, (int, float, str, bool, type(None)))}
