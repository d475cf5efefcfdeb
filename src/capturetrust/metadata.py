"""Capture metadata validation.

Checks:
1. Capture timestamp within the tolerance window of server receipt (inclusive)
2. Device model exactly on the allow-list of depth-sensor models
3. Location classified as supplied / user_opted_out / platform_unavailable

Location never fails the category; it only records a confidence ceiling
metric. Evidence is published, so a supplied fix is reported only as
coarsened coordinates (two decimal places by default, roughly 1 km).
Depth resolution plausibility is reported for information.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from capturetrust.config import MetadataConfig
from capturetrust.models import CaptureMetadata, CheckResult, ConfidenceLevel, Fail, Location, Pass

logger = logging.getLogger(__name__)


class LocationStatus(str, Enum):
    """How location data was (or was not) supplied."""

    SUPPLIED = "supplied"
    USER_OPTED_OUT = "user_opted_out"
    PLATFORM_UNAVAILABLE = "platform_unavailable"


def normalize_model(model: str) -> str:
    return " ".join(model.split()).casefold()


def coarsen_coordinates(latitude: float, longitude: float, decimal_places: int = 2) -> tuple[float, float]:
    return round(latitude, decimal_places), round(longitude, decimal_places)


def classify_location(location: Location | None, opted_out: bool) -> LocationStatus:
    if opted_out:
        return LocationStatus.USER_OPTED_OUT
    if location is None or not location.in_range:
        return LocationStatus.PLATFORM_UNAVAILABLE
    return LocationStatus.SUPPLIED


class MetadataValidator:
    """Validates declared capture metadata against server-side facts."""

    def __init__(
        self,
        config: MetadataConfig | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.config = config or MetadataConfig()
        self._allowed = {normalize_model(m) for m in self.config.allowed_models}
        self._clock = clock

    def timestamp_delta(self, captured_at: datetime, received_at: datetime) -> float:
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=UTC)
        return (received_at - captured_at).total_seconds()

    def model_allowed(self, model: str) -> bool:
        return normalize_model(model) in self._allowed

    def resolution_plausible(self, width: int | None, height: int | None) -> bool | None:
        if width is None or height is None:
            return None
        tol = self.config.resolution_tolerance
        return any(
            abs(width - w) <= tol and abs(height - h) <= tol
            for w, h in self.config.depth_resolutions
        )

    def check(
        self,
        metadata: CaptureMetadata,
        received_at: datetime | None = None,
        depth_width: int | None = None,
        depth_height: int | None = None,
    ) -> CheckResult:
        received_at = received_at or self._clock()
        delta = self.timestamp_delta(metadata.captured_at, received_at)
        timestamp_valid = abs(delta) <= self.config.timestamp_tolerance_seconds
        model_verified = self.model_allowed(metadata.device_model)
        location = classify_location(metadata.location, metadata.location_opted_out)
        ceiling = ConfidenceLevel.HIGH if location is LocationStatus.SUPPLIED else ConfidenceLevel.MEDIUM

        metrics: dict[str, Any] = {
            "timestamp_valid": timestamp_valid,
            "timestamp_delta_seconds": round(delta, 3),
            "model_verified": model_verified,
            "model_name": metadata.device_model,
            "location": location.value,
            "location_ceiling": ceiling.value,
        }
        if location is LocationStatus.SUPPLIED:
            metrics["location_coarse"] = list(
                coarsen_coordinates(
                    metadata.location.latitude,
                    metadata.location.longitude,
                    self.config.location_decimal_places,
                )
            )
        resolution = self.resolution_plausible(depth_width, depth_height)
        if resolution is not None:
            metrics["resolution_valid"] = resolution

        if not timestamp_valid or not model_verified:
            logger.info(
                "Metadata mismatch: timestamp_valid=%s model_verified=%s model=%r",
                timestamp_valid,
                model_verified,
                metadata.device_model,
            )
            return Fail(metrics)
        return Pass(metrics)
