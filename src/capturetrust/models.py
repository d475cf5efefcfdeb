"""Data models for the capture trust pipeline.

CheckResult is a closed tagged variant: every category result is exactly one
of ``Pass``, ``Fail`` or ``Unavailable``. There is no boolean-plus-flag form,
so "could not run" and "ran and failed" cannot be confused.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Union

from capturetrust.canonical import canonical_hash


class CheckStatus(str, Enum):
    """Tri-state outcome of one evidence category."""

    PASS = "pass"
    FAIL = "fail"
    UNAVAILABLE = "unavailable"


class Category(str, Enum):
    """Evidence categories, one CheckResult each."""

    HARDWARE_ATTESTATION = "hardware_attestation"
    SCENE_ANALYSIS = "scene_analysis"
    METADATA = "metadata"


class AttestationLevel(str, Enum):
    """Trust level of a registered device key."""

    HARDWARE_VERIFIED = "hardware_verified"
    UNVERIFIED = "unverified"


class ConfidenceLevel(str, Enum):
    """Graduated trust verdict derived from an EvidencePackage."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SUSPICIOUS = "suspicious"


@dataclass(frozen=True)
class Pass:
    """The check ran and every sub-check held."""

    metrics: dict[str, Any] = field(default_factory=dict)
    status: ClassVar[CheckStatus] = CheckStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "metrics": dict(self.metrics)}


@dataclass(frozen=True)
class Fail:
    """The check ran and produced a conclusive negative result."""

    metrics: dict[str, Any] = field(default_factory=dict)
    status: ClassVar[CheckStatus] = CheckStatus.FAIL

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "metrics": dict(self.metrics)}


@dataclass(frozen=True)
class Unavailable:
    """The check could not run, had insufficient input, or timed out."""

    reason: str
    metrics: dict[str, Any] = field(default_factory=dict)
    status: ClassVar[CheckStatus] = CheckStatus.UNAVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "reason": self.reason, "metrics": dict(self.metrics)}


CheckResult = Union[Pass, Fail, Unavailable]


def check_result_from_dict(data: dict[str, Any]) -> CheckResult:
    """Rebuild a CheckResult from its ``to_dict`` form."""
    status = CheckStatus(data["status"])
    metrics = dict(data.get("metrics") or {})
    if status is CheckStatus.PASS:
        return Pass(metrics)
    if status is CheckStatus.FAIL:
        return Fail(metrics)
    return Unavailable(data.get("reason", "unknown"), metrics)


@dataclass(frozen=True)
class Device:
    """Snapshot of a registered device record."""

    device_id: str
    public_key: bytes
    attestation_level: AttestationLevel
    counter: int = 0
    last_seen_at: datetime | None = None
    registered_at: datetime | None = None
    model: str = ""
    platform: str = "ios"
    attestation_reason: str | None = None

    @property
    def is_hardware_verified(self) -> bool:
        return self.attestation_level is AttestationLevel.HARDWARE_VERIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "public_key": self.public_key.hex(),
            "attestation_level": self.attestation_level.value,
            "attestation_reason": self.attestation_reason,
            "counter": self.counter,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
            "model": self.model,
            "platform": self.platform,
        }


@dataclass(frozen=True)
class Location:
    """GPS fix declared by the device."""

    latitude: float
    longitude: float
    accuracy_m: float | None = None

    @property
    def in_range(self) -> bool:
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0


@dataclass(frozen=True)
class CaptureMetadata:
    """Metadata declared by the capturing device."""

    captured_at: datetime
    device_model: str
    location: Location | None = None
    location_opted_out: bool = False
    assertion: bytes | None = None


@dataclass(frozen=True, eq=False)
class CaptureSubmission:
    """Immutable bundle received for one upload.

    ``color_image`` is an H x W (grey) or H x W x 3 array aligned with the
    depth map. ``body_hash`` is the hex SHA-256 of the signed request body.
    """

    media: bytes
    metadata: CaptureMetadata
    device_id: str
    request_timestamp_ms: int
    request_signature: bytes
    body_hash: str
    depth_map: bytes | None = None
    depth_width: int | None = None
    depth_height: int | None = None
    color_image: Any = None
    media_format: str = "image/jpeg"
    submission_id: str = ""

    @property
    def media_sha256(self) -> str:
        return hashlib.sha256(self.media).hexdigest()

    @property
    def capture_key(self) -> str:
        """Logical capture identity used to detect superseding uploads."""
        return f"{self.device_id}:{self.media_sha256}"


@dataclass(frozen=True)
class ProcessingInfo:
    """How and when an EvidencePackage was produced."""

    processed_at: str
    processing_time_ms: int
    version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed_at": self.processed_at,
            "processing_time_ms": self.processing_time_ms,
            "version": self.version,
        }

    @classmethod
    def now(cls, processing_time_ms: int, version: str) -> ProcessingInfo:
        return cls(
            processed_at=datetime.now(UTC).isoformat(),
            processing_time_ms=processing_time_ms,
            version=version,
        )


@dataclass(frozen=True)
class EvidencePackage:
    """Exactly one CheckResult per category; confidence is derived."""

    hardware_attestation: CheckResult
    scene_analysis: CheckResult
    metadata: CheckResult
    processing: ProcessingInfo

    @property
    def confidence(self) -> ConfidenceLevel:
        from capturetrust.aggregator import compute_confidence

        return compute_confidence(self.hardware_attestation, self.scene_analysis, self.metadata)

    def result_for(self, category: Category) -> CheckResult:
        return getattr(self, category.value)

    def to_dict(self) -> dict[str, Any]:
        """Public display form (used verbatim inside the manifest)."""
        return {
            Category.HARDWARE_ATTESTATION.value: self.hardware_attestation.to_dict(),
            Category.SCENE_ANALYSIS.value: self.scene_analysis.to_dict(),
            Category.METADATA.value: self.metadata.to_dict(),
            "processing": self.processing.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvidencePackage:
        processing = data["processing"]
        return cls(
            hardware_attestation=check_result_from_dict(data[Category.HARDWARE_ATTESTATION.value]),
            scene_analysis=check_result_from_dict(data[Category.SCENE_ANALYSIS.value]),
            metadata=check_result_from_dict(data[Category.METADATA.value]),
            processing=ProcessingInfo(
                processed_at=processing["processed_at"],
                processing_time_ms=int(processing["processing_time_ms"]),
                version=processing["version"],
            ),
        )

    def content_hash(self) -> str:
        return canonical_hash(self.to_dict())
