"""Capture Trust - evidence and trust scoring for hardware-attested captures."""

__version__ = "0.3.0"

from capturetrust.aggregator import compute_confidence
from capturetrust.config import PipelineConfig
from capturetrust.models import (
    CaptureMetadata,
    CaptureSubmission,
    CheckStatus,
    ConfidenceLevel,
    EvidencePackage,
    Fail,
    Pass,
    Unavailable,
)
from capturetrust.pipeline import CapturePipeline, PipelineResult

__all__ = [
    "__version__",
    "CaptureMetadata",
    "CaptureSubmission",
    "CapturePipeline",
    "CheckStatus",
    "ConfidenceLevel",
    "EvidencePackage",
    "Fail",
    "Pass",
    "PipelineConfig",
    "PipelineResult",
    "Unavailable",
    "compute_confidence",
]
