"""Capture Trust HTTP server.

A thin adapter over :class:`~capturetrust.pipeline.CapturePipeline`; it
decodes transport encodings and maps errors to envelopes, nothing more.

Capture uploads are signed per request. The client sends:
- X-Device-Id: registered device identifier
- X-Timestamp: request time in milliseconds since the epoch
- X-Signature: base64 CBOR assertion over SHA256("<timestamp>|<sha256(body)>")
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import numpy as np
from fastapi import FastAPI, HTTPException, Request
from fastapi import status as http_status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from capturetrust import __version__
from capturetrust.config import PipelineConfig
from capturetrust.errors import (
    AdmissionRejected,
    ChallengeError,
    ManifestError,
    SubmissionMalformed,
    SubmissionSuperseded,
)
from capturetrust.models import CaptureMetadata, CaptureSubmission, Location
from capturetrust.pipeline import CapturePipeline
from capturetrust.provenance.signing import ManifestSigner
from capturetrust.server_security import (
    CorrelationMiddleware,
    ErrorCategory,
    ErrorSeverity,
    SecurityHeadersMiddleware,
    category_for,
    error_response,
    request_id_of,
)

logger = logging.getLogger(__name__)

DEVICE_HEADER = "X-Device-Id"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_HEADER = "X-Signature"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


class ChallengeRequest(BaseModel):
    """Request model for challenge issuance."""

    client_id: str | None = None


class RegisterRequest(BaseModel):
    """Request model for device registration (binary fields base64)."""

    device_id: str
    attestation: str
    public_key: str
    challenge: str
    model: str = ""


class LocationModel(BaseModel):
    latitude: float
    longitude: float
    accuracy_m: float | None = None


class CaptureRequest(BaseModel):
    """Signed capture upload (binary fields base64)."""

    media: str
    media_format: str = "image/jpeg"
    captured_at: datetime
    device_model: str
    location: LocationModel | None = None
    location_opted_out: bool = False
    assertion: str | None = None
    depth_map: str | None = None
    depth_width: int | None = None
    depth_height: int | None = None
    color_image: str | None = None
    color_width: int | None = None
    color_height: int | None = None


class VerifyRequest(BaseModel):
    """Manifest verification request (binary fields base64)."""

    media: str | None = None
    manifest: str | None = None
    media_sha256: str | None = None


def _b64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise SubmissionMalformed(f"Field {field} is not valid base64", {"field": field}) from err


def _decode_color(data: bytes, width: int | None, height: int | None) -> np.ndarray:
    """Raw 8-bit grey or RGB pixels, row-major."""
    if not width or not height:
        raise SubmissionMalformed("color_image requires color_width and color_height")
    pixels = width * height
    if len(data) == pixels:
        return np.frombuffer(data, dtype=np.uint8).reshape(height, width)
    if len(data) == pixels * 3:
        return np.frombuffer(data, dtype=np.uint8).reshape(height, width, 3)
    raise SubmissionMalformed(
        "color_image size does not match its dimensions",
        {"bytes": len(data), "width": width, "height": height},
    )


def build_submission(headers: Any, raw_body: bytes, request_id: str) -> CaptureSubmission:
    """Decode a signed capture upload.

    Raises:
        SubmissionMalformed: If headers or body cannot be decoded
    """
    device_id = headers.get(DEVICE_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    signature = headers.get(SIGNATURE_HEADER)
    if not device_id or not timestamp or not signature:
        raise SubmissionMalformed(
            f"Missing authentication headers ({DEVICE_HEADER}, {TIMESTAMP_HEADER}, {SIGNATURE_HEADER})"
        )
    try:
        timestamp_ms = int(timestamp)
    except ValueError as err:
        raise SubmissionMalformed(f"{TIMESTAMP_HEADER} is not an integer") from err

    try:
        body = CaptureRequest.model_validate_json(raw_body)
    except ValidationError as err:
        raise SubmissionMalformed(f"Invalid capture body: {err.error_count()} validation error(s)") from err

    location = None
    if body.location is not None:
        location = Location(body.location.latitude, body.location.longitude, body.location.accuracy_m)
    captured_at = body.captured_at if body.captured_at.tzinfo else body.captured_at.replace(tzinfo=UTC)

    color = None
    if body.color_image:
        color = _decode_color(_b64(body.color_image, "color_image"), body.color_width, body.color_height)

    return CaptureSubmission(
        media=_b64(body.media, "media"),
        media_format=body.media_format,
        metadata=CaptureMetadata(
            captured_at=captured_at,
            device_model=body.device_model,
            location=location,
            location_opted_out=body.location_opted_out,
            assertion=_b64(body.assertion, "assertion") if body.assertion else None,
        ),
        device_id=device_id,
        request_timestamp_ms=timestamp_ms,
        request_signature=_b64(signature, SIGNATURE_HEADER),
        body_hash=hashlib.sha256(raw_body).hexdigest(),
        depth_map=_b64(body.depth_map, "depth_map") if body.depth_map else None,
        depth_width=body.depth_width,
        depth_height=body.depth_height,
        color_image=color,
        submission_id=request_id,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    logger.info("Capture Trust server starting up (app id %s)", app.state.pipeline.config.app_id)
    yield
    app.state.pipeline.close()
    logger.info("Capture Trust server shutting down")


def create_app(
    config: PipelineConfig | None = None,
    signer: ManifestSigner | None = None,
    pipeline: CapturePipeline | None = None,
    debug: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Pipeline configuration (defaults to environment)
        signer: Manifest signer (defaults to environment key)
        pipeline: Pre-built pipeline, overriding config and signer
        debug: Enable debug mode (shows stack traces in errors)

    Returns:
        Configured FastAPI application
    """
    if pipeline is None:
        pipeline = CapturePipeline(config or PipelineConfig.from_env(), signer=signer)

    app = FastAPI(
        title="Capture Trust API",
        description="Evidence and trust scoring for hardware-attested captures",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationMiddleware)

    def _envelope(
        request: Request,
        exc: Exception,
        status_code: int,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.WARNING,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> JSONResponse:
        return error_response(
            request,
            exc,
            status_code,
            category,
            severity=severity,
            code=code,
            details=details,
            headers=headers,
            include_traceback=debug,
        )

    @app.exception_handler(AdmissionRejected)
    async def admission_rejected_handler(request: Request, exc: AdmissionRejected):
        """Hard rejections carry their stable code."""
        return _envelope(
            request,
            exc,
            exc.code.http_status,
            category_for(exc.code),
            code=exc.code.value,
            details=exc.details,
        )

    @app.exception_handler(ChallengeError)
    async def challenge_error_handler(request: Request, exc: ChallengeError):
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _envelope(
            request,
            exc,
            http_status.HTTP_429_TOO_MANY_REQUESTS,
            ErrorCategory.RATE_LIMIT,
            code="CHALLENGE_RATE_LIMITED",
            headers=headers,
        )

    @app.exception_handler(SubmissionSuperseded)
    async def superseded_handler(request: Request, exc: SubmissionSuperseded):
        return _envelope(
            request,
            exc,
            http_status.HTTP_409_CONFLICT,
            ErrorCategory.CONFLICT,
            severity=ErrorSeverity.INFO,
            code="SUBMISSION_SUPERSEDED",
        )

    @app.exception_handler(ManifestError)
    async def manifest_error_handler(request: Request, exc: ManifestError):
        return _envelope(
            request,
            exc,
            http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCategory.VALIDATION,
            code="MANIFEST_ERROR",
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions with standardized error envelopes."""
        logger.error(
            "Unhandled error: %s",
            exc,
            exc_info=debug,
            extra={"request_id": request_id_of(request)},
        )
        return _envelope(
            request,
            exc,
            http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorCategory.INTERNAL,
            severity=ErrorSeverity.ERROR,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Wrap HTTP exceptions in a standardized error envelope."""
        return _envelope(
            request,
            exc,
            exc.status_code,
            ErrorCategory.VALIDATION if exc.status_code < 500 else ErrorCategory.INTERNAL,
            severity=ErrorSeverity.WARNING if exc.status_code < 500 else ErrorSeverity.ERROR,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        return _envelope(
            request,
            exc,
            http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCategory.VALIDATION,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            timestamp=datetime.now(UTC).isoformat(),
        )

    @app.post("/api/v1/devices/challenge")
    async def issue_challenge(request: Request, body: ChallengeRequest | None = None):
        client_id = (body.client_id if body else None) or (request.client.host if request.client else "anonymous")
        challenge = await asyncio.to_thread(app.state.pipeline.issue_challenge, client_id)
        return challenge.to_dict()

    @app.post("/api/v1/devices/register")
    async def register_device(request: Request, body: RegisterRequest):
        try:
            challenge = bytes.fromhex(body.challenge)
        except ValueError as err:
            raise SubmissionMalformed("Challenge is not hex", {"field": "challenge"}) from err
        outcome = await asyncio.to_thread(
            app.state.pipeline.register_device,
            device_id=body.device_id,
            attestation=_b64(body.attestation, "attestation"),
            public_key=_b64(body.public_key, "public_key"),
            challenge=challenge,
            model=body.model,
            request_id=request.state.request_id,
        )
        return outcome.to_dict()

    @app.post("/api/v1/captures")
    async def submit_capture(request: Request):
        """Admit a signed capture and return its evidence and manifest."""
        raw_body = await request.body()
        submission = build_submission(request.headers, raw_body, request.state.request_id)
        result = await app.state.pipeline.process(submission, request_id=request.state.request_id)

        response = result.to_dict()
        response["manifest_cose"] = base64.b64encode(result.manifest_bytes).decode("ascii")
        response["media"] = base64.b64encode(result.media).decode("ascii") if result.embedded else None
        return response

    @app.post("/api/v1/verify")
    async def verify_manifest(body: VerifyRequest):
        """Verify an embedded or sidecar manifest."""
        pipeline = app.state.pipeline
        media = _b64(body.media, "media") if body.media else None
        if body.manifest:
            media_sha256 = hashlib.sha256(media).hexdigest() if media is not None else body.media_sha256
            cose = _b64(body.manifest, "manifest")
            result = await asyncio.to_thread(pipeline.verifier.verify_cose, cose, media_sha256)
        elif media is not None:
            result = await asyncio.to_thread(pipeline.verify_media, media)
        else:
            raise HTTPException(status_code=400, detail="Provide media, manifest, or both")
        return result.to_dict()

    return app
