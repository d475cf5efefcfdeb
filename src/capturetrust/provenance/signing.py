"""Manifest signing (COSE_Sign1, Ed25519).

The private key sits behind the :class:`ManifestSigner` interface so a
deployment can route signing to an HSM or KMS. The in-process
:class:`Ed25519ManifestSigner` reads its key from arguments or environment
variables:
- CAPTURETRUST_SIGNING_PRIVATE_KEY: Base64-encoded 32-byte private key
- CAPTURETRUST_SIGNING_PUBLIC_KEY: Base64-encoded 32-byte public key (optional)
"""

from __future__ import annotations

import base64
import binascii
import os
from abc import ABC, abstractmethod

import cbor2
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from capturetrust.errors import ManifestError

# COSE header labels and algorithm ids (RFC 9052 / 9053)
COSE_HEADER_ALG = 1
COSE_HEADER_KID = 4
COSE_ALG_EDDSA = -8
COSE_SIGN1_TAG = 18

PRIVATE_KEY_ENV = "CAPTURETRUST_SIGNING_PRIVATE_KEY"
PUBLIC_KEY_ENV = "CAPTURETRUST_SIGNING_PUBLIC_KEY"


class SigningError(ManifestError):
    """Error during signing operation."""


class ManifestSigner(ABC):
    """Signing interface; the private key never crosses it."""

    algorithm: int = COSE_ALG_EDDSA

    @property
    @abstractmethod
    def public_key(self) -> bytes:
        """Raw public key bytes."""

    @property
    def kid(self) -> bytes:
        """Key identifier placed in the protected header."""
        return self.public_key

    @abstractmethod
    def sign(self, message: bytes) -> bytes:
        """Sign ``message`` and return the raw signature."""


class Ed25519ManifestSigner(ManifestSigner):
    """In-process Ed25519 signer."""

    def __init__(self, private_key: bytes | None = None) -> None:
        if private_key is None:
            private_key = self._load_private_key_from_env()
        if private_key is None:
            raise SigningError(f"No private key configured (set {PRIVATE_KEY_ENV})")
        if len(private_key) != 32:
            raise SigningError(f"Ed25519 private key must be 32 bytes, got {len(private_key)}")

        self._signing_key = Ed25519PrivateKey.from_private_bytes(private_key)
        self._public_key = self._signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

        expected = os.environ.get(PUBLIC_KEY_ENV)
        if expected and _b64decode(expected, PUBLIC_KEY_ENV) != self._public_key:
            raise SigningError(f"{PUBLIC_KEY_ENV} does not match the configured private key")

    @staticmethod
    def _load_private_key_from_env() -> bytes | None:
        value = os.environ.get(PRIVATE_KEY_ENV)
        if not value:
            return None
        return _b64decode(value, PRIVATE_KEY_ENV)

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message)

    @classmethod
    def generate(cls) -> Ed25519ManifestSigner:
        private_key, _ = generate_keys()
        return cls(private_key)


def _b64decode(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise SigningError(f"Invalid base64 in {name}") from err


def generate_keys() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 key pair.

    Returns:
        Tuple of (private_key, public_key) as raw bytes
    """
    private_key = Ed25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return private_bytes, public_bytes


def keys_to_env_format(private_key: bytes, public_key: bytes) -> tuple[str, str]:
    """Convert keys to environment variable format.

    Returns:
        Tuple of (private_key_b64, public_key_b64)
    """
    return (
        base64.b64encode(private_key).decode("ascii"),
        base64.b64encode(public_key).decode("ascii"),
    )


def sign_cose(payload: bytes, signer: ManifestSigner) -> bytes:
    """Produce a tagged COSE_Sign1 message over ``payload``.

    Sig_structure = ["Signature1", protected, external_aad = b"", payload]
    """
    protected = cbor2.dumps({COSE_HEADER_ALG: signer.algorithm, COSE_HEADER_KID: signer.kid})
    sig_structure = cbor2.dumps(["Signature1", protected, b"", payload])
    try:
        signature = signer.sign(sig_structure)
    except Exception as err:  # remote signers raise their own error types
        raise SigningError(f"Signing failed: {err}") from err
    return cbor2.dumps(cbor2.CBORTag(COSE_SIGN1_TAG, [protected, {}, payload, signature]))
