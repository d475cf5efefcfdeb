"""Capture manifest generation.

The manifest holds a claim generator, a creation action, a hash binding to
the original media bytes (``capturetrust.hash.data``) and an assertion
carrying the evidence package and its confidence level. The labels are this
service's own; the manifest is not a C2PA claim.
It is signed over its canonical JSON bytes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from capturetrust import __version__
from capturetrust.canonical import canonical_bytes
from capturetrust.config import ManifestConfig
from capturetrust.errors import ManifestError
from capturetrust.models import EvidencePackage

ACTIONS_LABEL = "capturetrust.actions"
HASH_DATA_LABEL = "capturetrust.hash.data"
EVIDENCE_LABEL = "capturetrust.evidence"


@dataclass(frozen=True)
class CaptureManifest:
    """Signed-manifest content for one capture."""

    claim_generator: str
    title: str
    format: str
    instance_id: str
    assertions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "claim_generator": self.claim_generator,
            "title": self.title,
            "format": self.format,
            "instance_id": self.instance_id,
            "assertions": [dict(a) for a in self.assertions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CaptureManifest:
        """Create from dictionary."""
        try:
            return cls(
                claim_generator=data["claim_generator"],
                title=data["title"],
                format=data["format"],
                instance_id=data["instance_id"],
                assertions=list(data["assertions"]),
            )
        except (KeyError, TypeError) as err:
            raise ManifestError(f"Manifest is missing required field: {err}") from err

    def to_bytes(self) -> bytes:
        """Canonical bytes (the signed payload)."""
        return canonical_bytes(self.to_dict())

    def assertion(self, label: str) -> dict[str, Any]:
        for item in self.assertions:
            if item.get("label") == label:
                return item.get("data", {})
        raise ManifestError(f"Manifest has no {label} assertion")

    @property
    def media_hash(self) -> str:
        return self.assertion(HASH_DATA_LABEL)["hash"]

    @property
    def evidence_data(self) -> dict[str, Any]:
        return self.assertion(EVIDENCE_LABEL)["evidence"]

    @property
    def confidence(self) -> str:
        return self.assertion(EVIDENCE_LABEL)["confidence"]

    def evidence(self) -> EvidencePackage:
        return EvidencePackage.from_dict(self.evidence_data)


class ManifestBuilder:
    """Builds canonical manifests from evidence packages."""

    def __init__(self, config: ManifestConfig | None = None) -> None:
        self.config = config or ManifestConfig()

    @property
    def generator(self) -> str:
        return f"{self.config.generator_name}/{__version__}"

    def build(
        self,
        evidence: EvidencePackage,
        media_sha256: str,
        media_format: str = "image/jpeg",
        instance_id: str | None = None,
        created_at: datetime | None = None,
    ) -> CaptureManifest:
        created_at = created_at or datetime.now(UTC)
        return CaptureManifest(
            claim_generator=self.generator,
            title=self.config.title,
            format=media_format,
            instance_id=instance_id or f"xmp:iid:{uuid.uuid4()}",
            assertions=[
                {
                    "label": ACTIONS_LABEL,
                    "data": {
                        "actions": [
                            {
                                "action": "capturetrust.created",
                                "when": created_at.isoformat(),
                                "softwareAgent": self.generator,
                            }
                        ]
                    },
                },
                {
                    "label": HASH_DATA_LABEL,
                    "data": {"alg": "sha256", "hash": media_sha256, "name": "original media"},
                },
                {
                    "label": EVIDENCE_LABEL,
                    "data": {
                        "evidence": evidence.to_dict(),
                        "confidence": evidence.confidence.value,
                    },
                },
            ],
        )
