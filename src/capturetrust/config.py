"""
Configuration for the capture trust pipeline.

Supports:
- Environment variable configuration (CAPTURETRUST_*)
- YAML file configuration
- Runtime overrides via from_dict

Depth thresholds need empirical calibration, so every threshold lives here
rather than in the analyzers.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from capturetrust.errors import ConfigError

DEFAULT_ALLOWED_MODELS: tuple[str, ...] = (
    "iPhone 12 Pro",
    "iPhone 12 Pro Max",
    "iPhone 13 Pro",
    "iPhone 13 Pro Max",
    "iPhone 14 Pro",
    "iPhone 14 Pro Max",
    "iPhone 15 Pro",
    "iPhone 15 Pro Max",
    "iPhone 16 Pro",
    "iPhone 16 Pro Max",
    "iPhone 17 Pro",
    "iPhone 17 Pro Max",
)

# Known LiDAR depth map formats (width, height)
DEFAULT_DEPTH_RESOLUTIONS: tuple[tuple[int, int], ...] = (
    (256, 192),
    (320, 240),
    (640, 480),
    (384, 288),
)


class NegativeScenePolicy(Enum):
    """How a completed depth analysis that fails its thresholds is reported."""

    FAIL = "fail"
    UNAVAILABLE = "unavailable"


@dataclass
class AuthConfig:
    """Request authentication settings."""

    timestamp_tolerance_ms: int = 300_000

    def __post_init__(self) -> None:
        if self.timestamp_tolerance_ms < 0:
            raise ConfigError(f"timestamp_tolerance_ms must be >= 0, got {self.timestamp_tolerance_ms}")


@dataclass
class AttestationConfig:
    """Registration attestation and challenge settings."""

    root_certificates_path: str | None = None
    challenge_ttl_seconds: int = 300
    challenge_rate_limit: int = 10
    challenge_rate_window_seconds: int = 60

    def __post_init__(self) -> None:
        if self.challenge_ttl_seconds <= 0:
            raise ConfigError(f"challenge_ttl_seconds must be > 0, got {self.challenge_ttl_seconds}")
        if self.challenge_rate_limit < 1:
            raise ConfigError(f"challenge_rate_limit must be >= 1, got {self.challenge_rate_limit}")


@dataclass
class DepthConfig:
    """Depth analysis thresholds.

    Variance and coherence thresholds are strict (value must exceed them);
    the layer threshold is inclusive.
    """

    min_depth: float = 0.1
    max_depth: float = 20.0
    variance_threshold: float = 0.5
    layer_threshold: int = 3
    coherence_threshold: float = 0.7
    histogram_bins: int = 50
    floor_ratio: float = 0.05
    trough_ratio: float = 0.5
    periodic_min_frequency: float = 0.25
    periodic_peak_ratio: float = 30.0
    quadrant_tolerance: float = 0.15
    conclusive_negative: NegativeScenePolicy = NegativeScenePolicy.FAIL

    def __post_init__(self) -> None:
        if isinstance(self.conclusive_negative, str):
            try:
                self.conclusive_negative = NegativeScenePolicy(self.conclusive_negative.lower())
            except ValueError as err:
                raise ConfigError(f"Unknown conclusive_negative policy: {self.conclusive_negative}") from err
        if not 0.0 <= self.min_depth < self.max_depth:
            raise ConfigError(f"Invalid depth range {self.min_depth}-{self.max_depth}")
        if self.histogram_bins < 3:
            raise ConfigError(f"histogram_bins must be >= 3, got {self.histogram_bins}")
        if not 0.0 < self.trough_ratio < 1.0:
            raise ConfigError(f"trough_ratio must be in (0, 1), got {self.trough_ratio}")
        if not 0.0 < self.periodic_min_frequency < 0.5:
            raise ConfigError(
                f"periodic_min_frequency must be in (0, 0.5), got {self.periodic_min_frequency}"
            )


@dataclass
class MetadataConfig:
    """Capture metadata validation settings."""

    timestamp_tolerance_seconds: int = 900
    allowed_models: tuple[str, ...] = DEFAULT_ALLOWED_MODELS
    depth_resolutions: tuple[tuple[int, int], ...] = DEFAULT_DEPTH_RESOLUTIONS
    resolution_tolerance: int = 10
    location_decimal_places: int = 2

    def __post_init__(self) -> None:
        self.allowed_models = tuple(self.allowed_models)
        self.depth_resolutions = tuple(tuple(r) for r in self.depth_resolutions)
        if self.timestamp_tolerance_seconds < 0:
            raise ConfigError(
                f"timestamp_tolerance_seconds must be >= 0, got {self.timestamp_tolerance_seconds}"
            )
        if not self.allowed_models:
            raise ConfigError("allowed_models must not be empty")
        if not 0 <= self.location_decimal_places <= 6:
            raise ConfigError(
                f"location_decimal_places must be between 0 and 6, got {self.location_decimal_places}"
            )


@dataclass
class ManifestConfig:
    """Manifest generation settings."""

    generator_name: str = "capturetrust"
    title: str = "capture"


@dataclass
class PipelineTimeouts:
    """Per-category hard timeouts in seconds."""

    hardware_attestation: float = 2.0
    scene_analysis: float = 10.0
    metadata: float = 1.0

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) <= 0:
                raise ConfigError(f"timeout {f.name} must be > 0")


@dataclass
class PipelineConfig:
    """Top-level configuration for the capture pipeline."""

    app_id: str = "TEAMID.app.capturetrust"
    database_path: str = ":memory:"
    auth: AuthConfig = field(default_factory=AuthConfig)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)
    depth: DepthConfig = field(default_factory=DepthConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    manifest: ManifestConfig = field(default_factory=ManifestConfig)
    timeouts: PipelineTimeouts = field(default_factory=PipelineTimeouts)
    check_workers: int = 4

    def __post_init__(self) -> None:
        if self.check_workers < 1:
            raise ConfigError("check_workers must be >= 1")

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """
        Create configuration from environment variables.

        Environment variables:
            CAPTURETRUST_CONFIG: YAML file loaded first; variables below override it
            CAPTURETRUST_APP_ID: Application identity ("TEAMID.bundle.id")
            CAPTURETRUST_DB_PATH: SQLite database path
            CAPTURETRUST_ROOT_CERTS: Pinned attestation root bundle (PEM)
            CAPTURETRUST_AUTH_TOLERANCE_MS: Request timestamp tolerance
            CAPTURETRUST_METADATA_TOLERANCE_S: Capture timestamp tolerance
            CAPTURETRUST_DEPTH_VARIANCE_MIN / _LAYERS_MIN / _COHERENCE_MIN: Scene thresholds
            CAPTURETRUST_DEPTH_NEGATIVE_POLICY: fail | unavailable
            CAPTURETRUST_TIMEOUT_DEPTH_S: Scene analysis timeout
            CAPTURETRUST_CHECK_WORKERS: Threads shared by the category checks
        """
        config_path = os.getenv("CAPTURETRUST_CONFIG")
        data: dict[str, Any] = {}
        if config_path:
            data = _read_yaml(Path(config_path))

        def _section(name: str) -> dict[str, Any]:
            return data.setdefault(name, {})

        try:
            if "CAPTURETRUST_APP_ID" in os.environ:
                data["app_id"] = os.environ["CAPTURETRUST_APP_ID"]
            if "CAPTURETRUST_DB_PATH" in os.environ:
                data["database_path"] = os.environ["CAPTURETRUST_DB_PATH"]
            if "CAPTURETRUST_ROOT_CERTS" in os.environ:
                _section("attestation")["root_certificates_path"] = os.environ["CAPTURETRUST_ROOT_CERTS"]
            if "CAPTURETRUST_AUTH_TOLERANCE_MS" in os.environ:
                _section("auth")["timestamp_tolerance_ms"] = int(os.environ["CAPTURETRUST_AUTH_TOLERANCE_MS"])
            if "CAPTURETRUST_METADATA_TOLERANCE_S" in os.environ:
                _section("metadata")["timestamp_tolerance_seconds"] = int(
                    os.environ["CAPTURETRUST_METADATA_TOLERANCE_S"]
                )
            if "CAPTURETRUST_DEPTH_VARIANCE_MIN" in os.environ:
                _section("depth")["variance_threshold"] = float(os.environ["CAPTURETRUST_DEPTH_VARIANCE_MIN"])
            if "CAPTURETRUST_DEPTH_LAYERS_MIN" in os.environ:
                _section("depth")["layer_threshold"] = int(os.environ["CAPTURETRUST_DEPTH_LAYERS_MIN"])
            if "CAPTURETRUST_DEPTH_COHERENCE_MIN" in os.environ:
                _section("depth")["coherence_threshold"] = float(os.environ["CAPTURETRUST_DEPTH_COHERENCE_MIN"])
            if "CAPTURETRUST_DEPTH_NEGATIVE_POLICY" in os.environ:
                _section("depth")["conclusive_negative"] = os.environ["CAPTURETRUST_DEPTH_NEGATIVE_POLICY"]
            if "CAPTURETRUST_TIMEOUT_DEPTH_S" in os.environ:
                _section("timeouts")["scene_analysis"] = float(os.environ["CAPTURETRUST_TIMEOUT_DEPTH_S"])
            if "CAPTURETRUST_CHECK_WORKERS" in os.environ:
                data["check_workers"] = int(os.environ["CAPTURETRUST_CHECK_WORKERS"])
        except ValueError as err:
            raise ConfigError(f"Invalid numeric environment value: {err}") from err

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Create configuration from dictionary (e.g., YAML)."""
        try:
            return cls(
                app_id=data.get("app_id", cls.app_id),
                database_path=str(data.get("database_path", cls.database_path)),
                auth=AuthConfig(**_known(AuthConfig, data.get("auth"))),
                attestation=AttestationConfig(**_known(AttestationConfig, data.get("attestation"))),
                depth=DepthConfig(**_known(DepthConfig, data.get("depth"))),
                metadata=MetadataConfig(**_known(MetadataConfig, data.get("metadata"))),
                manifest=ManifestConfig(**_known(ManifestConfig, data.get("manifest"))),
                timeouts=PipelineTimeouts(**_known(PipelineTimeouts, data.get("timeouts"))),
                check_workers=int(data.get("check_workers", cls.check_workers)),
            )
        except ConfigError:
            raise
        except (TypeError, ValueError) as err:
            raise ConfigError(f"Invalid configuration: {err}") from err

    @classmethod
    def from_yaml(cls, path: Path) -> PipelineConfig:
        """Load configuration from a YAML file."""
        return cls.from_dict(_read_yaml(path))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        result = asdict(self)
        result["depth"]["conclusive_negative"] = self.depth.conclusive_negative.value
        result["metadata"]["allowed_models"] = list(self.metadata.allowed_models)
        result["metadata"]["depth_resolutions"] = [list(r) for r in self.metadata.depth_resolutions]
        return result


def _known(cls: type, data: dict[str, Any] | None) -> dict[str, Any]:
    """Drop unknown keys so older config files keep loading."""
    if not data:
        return {}
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as err:
        raise ConfigError(f"Cannot read config file {path}: {err}") from err
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return loaded
