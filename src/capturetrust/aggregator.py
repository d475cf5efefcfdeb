"""Confidence aggregation.

Pure, total decision policy over the three category statuses. Rules are
evaluated in order and the first match wins:

1. any category ``fail``                      -> SUSPICIOUS
2. hardware ``pass`` and scene ``pass``       -> HIGH
3. exactly one of hardware / scene ``pass``   -> MEDIUM
4. otherwise                                  -> LOW

Metadata only participates through rule 1.
"""

from __future__ import annotations

from typing import Any

from capturetrust.models import CheckResult, CheckStatus, ConfidenceLevel


def confidence_from_statuses(
    hardware: CheckStatus,
    scene: CheckStatus,
    metadata: CheckStatus,
) -> ConfidenceLevel:
    """Apply the decision policy to raw statuses."""
    if CheckStatus.FAIL in (hardware, scene, metadata):
        return ConfidenceLevel.SUSPICIOUS

    hw_pass = hardware is CheckStatus.PASS
    scene_pass = scene is CheckStatus.PASS

    if hw_pass and scene_pass:
        return ConfidenceLevel.HIGH
    if hw_pass != scene_pass:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def compute_confidence(
    hardware_attestation: CheckResult,
    scene_analysis: CheckResult,
    metadata: CheckResult,
) -> ConfidenceLevel:
    """Compute the confidence level for one set of category results."""
    return confidence_from_statuses(
        hardware_attestation.status,
        scene_analysis.status,
        metadata.status,
    )


def explain_confidence(
    hardware_attestation: CheckResult,
    scene_analysis: CheckResult,
    metadata: CheckResult,
) -> dict[str, Any]:
    """Return the level together with the rule that produced it."""
    statuses = {
        "hardware_attestation": hardware_attestation.status,
        "scene_analysis": scene_analysis.status,
        "metadata": metadata.status,
    }
    level = compute_confidence(hardware_attestation, scene_analysis, metadata)

    if level is ConfidenceLevel.SUSPICIOUS:
        failed = sorted(name for name, status in statuses.items() if status is CheckStatus.FAIL)
        rule = f"inconsistency detected in: {', '.join(failed)}"
    elif level is ConfidenceLevel.HIGH:
        rule = "hardware attestation and scene analysis both passed"
    elif level is ConfidenceLevel.MEDIUM:
        rule = "one of hardware attestation or scene analysis passed"
    else:
        rule = "neither hardware attestation nor scene analysis passed"

    return {
        "level": level.value,
        "rule": rule,
        "statuses": {name: status.value for name, status in statuses.items()},
    }
