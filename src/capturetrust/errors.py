"""Rejection codes and exception taxonomy.

Two tiers of failure exist in the pipeline. Admission-time rejections are
raised as subclasses of :class:`AdmissionRejected`; the submission never
reaches evidence computation. Computation-time problems are never raised:
they are mapped to an ``Unavailable`` check result by the component that
hit them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class RejectionCode(Enum):
    """Stable, machine-readable admission rejection codes.

    Format: DOMAIN_DETAIL
    """

    AUTH_UNKNOWN_DEVICE = "AUTH_UNKNOWN_DEVICE"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    AUTH_INVALID_SIGNATURE = "AUTH_INVALID_SIGNATURE"
    AUTH_REPLAY_DETECTED = "AUTH_REPLAY_DETECTED"
    ATTESTATION_MALFORMED = "ATTESTATION_MALFORMED"
    SUBMISSION_MALFORMED = "SUBMISSION_MALFORMED"
    DEVICE_ALREADY_REGISTERED = "DEVICE_ALREADY_REGISTERED"

    @property
    def http_status(self) -> int:
        if self is RejectionCode.AUTH_UNKNOWN_DEVICE:
            return 404
        if self in (RejectionCode.ATTESTATION_MALFORMED, RejectionCode.SUBMISSION_MALFORMED):
            return 400
        if self in (RejectionCode.AUTH_REPLAY_DETECTED, RejectionCode.DEVICE_ALREADY_REGISTERED):
            return 409
        return 401


class CaptureTrustError(Exception):
    """Base class for all package errors."""


class AdmissionRejected(CaptureTrustError):
    """Hard rejection; the submission never enters evidence computation."""

    code: RejectionCode = RejectionCode.SUBMISSION_MALFORMED

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class AuthUnknownDevice(AdmissionRejected):
    code = RejectionCode.AUTH_UNKNOWN_DEVICE


class AuthExpired(AdmissionRejected):
    code = RejectionCode.AUTH_EXPIRED


class AuthInvalidSignature(AdmissionRejected):
    code = RejectionCode.AUTH_INVALID_SIGNATURE


class AuthReplayDetected(AdmissionRejected):
    code = RejectionCode.AUTH_REPLAY_DETECTED


class AttestationMalformed(AdmissionRejected):
    code = RejectionCode.ATTESTATION_MALFORMED


class SubmissionMalformed(AdmissionRejected):
    code = RejectionCode.SUBMISSION_MALFORMED


class DeviceAlreadyRegistered(AdmissionRejected):
    """Re-registration of a known device without a verified attestation."""

    code = RejectionCode.DEVICE_ALREADY_REGISTERED


class SubmissionSuperseded(CaptureTrustError):
    """A newer submission for the same capture cancelled this one."""

    def __init__(self, capture_key: str) -> None:
        super().__init__(f"Submission for capture {capture_key[:16]} was superseded")
        self.capture_key = capture_key


class ChallengeError(CaptureTrustError):
    """Challenge issuance refused (rate limited)."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ManifestError(CaptureTrustError):
    """Error building, signing, embedding or extracting a manifest."""


class ConfigError(CaptureTrustError, ValueError):
    """Invalid configuration value."""
