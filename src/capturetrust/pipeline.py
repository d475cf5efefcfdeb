"""Capture pipeline orchestration.

Admission is decided first and synchronously against the device store. An
admitted submission then fans out to the three category checks, which run
as concurrent asyncio tasks (CPU work on a bounded worker pool), each with
its own timeout. The joined results become an EvidencePackage, which is
turned into a signed manifest and embedded into the media.

A later submission with the same capture key cancels an in-flight one; the
cancelled submission raises SubmissionSuperseded and nothing it computed is
signed or returned.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from capturetrust import __version__
from capturetrust.attestation import (
    AttestationOutcome,
    AttestationVerifier,
    CaptureAssertionVerifier,
    load_root_certificates,
)
from capturetrust.auth import SignatureAuthenticator
from capturetrust.challenges import Challenge, ChallengeStore
from capturetrust.config import PipelineConfig
from capturetrust.depth import DepthAnalyzer
from capturetrust.errors import ManifestError, SubmissionSuperseded
from capturetrust.metadata import MetadataValidator
from capturetrust.models import (
    CaptureSubmission,
    Category,
    CheckResult,
    ConfidenceLevel,
    Device,
    EvidencePackage,
    ProcessingInfo,
    Unavailable,
)
from capturetrust.provenance.embed import embed_manifest
from capturetrust.provenance.manifest import CaptureManifest, ManifestBuilder
from capturetrust.provenance.signing import PRIVATE_KEY_ENV, Ed25519ManifestSigner, ManifestSigner, sign_cose
from capturetrust.provenance.verifier import ManifestVerificationResult, ManifestVerifier
from capturetrust.store import Database, DeviceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    """Everything published for one admitted submission."""

    request_id: str
    device: Device
    evidence: EvidencePackage
    manifest: CaptureManifest
    manifest_bytes: bytes
    media: bytes
    embedded: bool

    @property
    def confidence(self) -> ConfidenceLevel:
        return self.evidence.confidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "device_id": self.device.device_id,
            "confidence": self.confidence.value,
            "evidence": self.evidence.to_dict(),
            "manifest": self.manifest.to_dict(),
            "embedded": self.embedded,
        }


def _generate_request_id() -> str:
    return uuid.uuid4().hex


class CapturePipeline:
    """Wires the stores, verifiers and signer around one configuration."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        signer: ManifestSigner | None = None,
        roots: list | None = None,
        database: Database | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.config = config or PipelineConfig()
        self._clock = clock
        self.db = database or Database(self.config.database_path)
        self.devices = DeviceStore(self.db)

        att = self.config.attestation
        self.challenges = ChallengeStore(
            self.db,
            ttl_seconds=att.challenge_ttl_seconds,
            rate_limit=att.challenge_rate_limit,
            rate_window_seconds=att.challenge_rate_window_seconds,
            clock=lambda: self._clock().timestamp(),
        )
        if roots is None and att.root_certificates_path:
            roots = load_root_certificates(att.root_certificates_path)
        if not roots:
            logger.warning("No pinned attestation roots configured; every device will register as unverified")

        self.authenticator = SignatureAuthenticator(
            self.devices,
            tolerance_ms=self.config.auth.timestamp_tolerance_ms,
            app_id=self.config.app_id,
            clock=lambda: int(self._clock().timestamp() * 1000),
        )
        self.attestation = AttestationVerifier(
            self.devices, self.challenges, self.config.app_id, roots=roots, clock=self._clock
        )
        self.capture_assertions = CaptureAssertionVerifier(self.config.app_id)
        self.depth = DepthAnalyzer(self.config.depth)
        self.metadata = MetadataValidator(self.config.metadata, clock=self._clock)
        self.builder = ManifestBuilder(self.config.manifest)
        self.signer = signer or self._default_signer()

        # a check abandoned on timeout holds its worker until it returns
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.check_workers, thread_name_prefix="capturetrust-check"
        )
        self._inflight: dict[str, asyncio.Task] = {}
        self._superseded: set[asyncio.Task] = set()

    @staticmethod
    def _default_signer() -> ManifestSigner:
        if os.environ.get(PRIVATE_KEY_ENV):
            return Ed25519ManifestSigner()
        logger.warning("No signing key configured (%s); using an ephemeral key", PRIVATE_KEY_ENV)
        return Ed25519ManifestSigner.generate()

    # Registration

    def issue_challenge(self, client_id: str = "anonymous") -> Challenge:
        return self.challenges.issue(client_id)

    def register_device(
        self,
        device_id: str,
        attestation: bytes,
        public_key: bytes,
        challenge: bytes,
        model: str = "",
        request_id: str | None = None,
    ) -> AttestationOutcome:
        request_id = request_id or _generate_request_id()
        outcome = self.attestation.register(
            device_id=device_id,
            attestation=attestation,
            claimed_public_key=public_key,
            challenge=challenge,
            model=model,
            request_id=request_id,
        )
        logger.info(
            "Device registered as %s",
            outcome.level.value,
            extra={"request_id": request_id, "device_id": device_id},
        )
        return outcome

    # Capture processing

    async def process(self, submission: CaptureSubmission, request_id: str | None = None) -> PipelineResult:
        """Admit and evaluate one submission.

        Raises:
            AdmissionRejected: If the request fails authentication
            SubmissionSuperseded: If a later submission for the same capture arrived
            ManifestError: If the manifest cannot be signed
        """
        request_id = request_id or submission.submission_id or _generate_request_id()
        received_at = self._clock()

        device = await asyncio.to_thread(
            self.authenticator.authenticate,
            submission.device_id,
            submission.request_timestamp_ms,
            submission.request_signature,
            submission.body_hash,
            request_id,
        )

        key = submission.capture_key
        previous = self._inflight.get(key)
        if previous is not None and not previous.done():
            logger.info(
                "Superseding in-flight submission for %s",
                key,
                extra={"request_id": request_id, "device_id": submission.device_id},
            )
            self._superseded.add(previous)
            previous.cancel()

        task = asyncio.ensure_future(self._evaluate(submission, device, request_id, received_at))
        self._inflight[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._superseded:
                raise SubmissionSuperseded(key) from None
            raise
        finally:
            self._superseded.discard(task)
            if self._inflight.get(key) is task:
                del self._inflight[key]

    async def _evaluate(
        self,
        submission: CaptureSubmission,
        device: Device,
        request_id: str,
        received_at: datetime,
    ) -> PipelineResult:
        started = time.perf_counter()
        timeouts = self.config.timeouts
        media_sha256 = submission.media_sha256

        hardware, scene, meta = await asyncio.gather(
            self._bounded(
                Category.HARDWARE_ATTESTATION,
                timeouts.hardware_attestation,
                self.capture_assertions.check,
                device,
                submission.metadata,
                media_sha256,
            ),
            self._bounded(Category.SCENE_ANALYSIS, timeouts.scene_analysis, self.depth.check, submission),
            self._bounded(
                Category.METADATA,
                timeouts.metadata,
                self.metadata.check,
                submission.metadata,
                received_at,
                submission.depth_width,
                submission.depth_height,
            ),
        )

        evidence = EvidencePackage(
            hardware_attestation=hardware,
            scene_analysis=scene,
            metadata=meta,
            processing=ProcessingInfo.now(int((time.perf_counter() - started) * 1000), __version__),
        )
        manifest = self.builder.build(evidence, media_sha256, submission.media_format)
        cose = sign_cose(manifest.to_bytes(), self.signer)
        try:
            media, embedded = embed_manifest(submission.media, cose, manifest.instance_id)
        except ManifestError as err:
            logger.warning(
                "Manifest not embedded, returning sidecar: %s",
                err,
                extra={"request_id": request_id, "device_id": device.device_id},
            )
            media, embedded = submission.media, False

        logger.info(
            "Capture scored %s (hardware=%s scene=%s metadata=%s)",
            evidence.confidence.value,
            hardware.status.value,
            scene.status.value,
            meta.status.value,
            extra={"request_id": request_id, "device_id": device.device_id},
        )
        return PipelineResult(
            request_id=request_id,
            device=device,
            evidence=evidence,
            manifest=manifest,
            manifest_bytes=cose,
            media=media,
            embedded=embedded,
        )

    async def _bounded(self, category: Category, timeout: float, func: Callable[..., CheckResult], *args) -> CheckResult:
        try:
            loop = asyncio.get_running_loop()
            return await asyncio.wait_for(loop.run_in_executor(self._executor, func, *args), timeout)
        except TimeoutError:
            logger.warning("%s check timed out after %.1fs", category.value, timeout)
            return Unavailable("timeout")
        except Exception as err:
            logger.exception("%s check failed", category.value)
            return Unavailable(f"internal error: {type(err).__name__}")

    # Verification

    @property
    def verifier(self) -> ManifestVerifier:
        return ManifestVerifier(self.signer.public_key)

    def verify_media(self, media: bytes) -> ManifestVerificationResult:
        return self.verifier.verify_media(media)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.db.close()
