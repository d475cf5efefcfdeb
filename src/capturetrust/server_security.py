"""Middleware and error envelopes for the Capture Trust server.

Every response carries the request's correlation id. Every error, whether a
hard admission rejection or an unexpected failure, leaves as the same
envelope shape so clients can branch on ``error.code`` alone.
"""

from __future__ import annotations

import logging
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from capturetrust.errors import RejectionCode

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
DURATION_HEADER = "X-Request-Duration-ms"

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}


class ErrorCategory(str, Enum):
    """Coarse classification shown to clients."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    INTERNAL = "internal"


class ErrorSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


_REJECTION_CATEGORIES = {
    RejectionCode.AUTH_UNKNOWN_DEVICE: ErrorCategory.NOT_FOUND,
    RejectionCode.AUTH_EXPIRED: ErrorCategory.AUTHENTICATION,
    RejectionCode.AUTH_INVALID_SIGNATURE: ErrorCategory.AUTHENTICATION,
    RejectionCode.AUTH_REPLAY_DETECTED: ErrorCategory.CONFLICT,
    RejectionCode.ATTESTATION_MALFORMED: ErrorCategory.VALIDATION,
    RejectionCode.SUBMISSION_MALFORMED: ErrorCategory.VALIDATION,
    RejectionCode.DEVICE_ALREADY_REGISTERED: ErrorCategory.CONFLICT,
}


def category_for(code: RejectionCode) -> ErrorCategory:
    return _REJECTION_CATEGORIES[code]


def generate_error_id() -> str:
    return f"err_{uuid.uuid4().hex[:16]}"


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


@dataclass(frozen=True)
class ErrorEnvelope:
    """Error body returned for every failed request."""

    request_id: str
    category: ErrorCategory
    code: str
    message: str
    severity: ErrorSeverity = ErrorSeverity.WARNING
    details: dict[str, Any] = field(default_factory=dict)
    error_id: str = field(default_factory=generate_error_id)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    trace: str | None = None

    @classmethod
    def from_exception(
        cls,
        request_id: str,
        error: Exception,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.WARNING,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        include_traceback: bool = False,
    ) -> ErrorEnvelope:
        """Build an envelope; the code defaults to one derived from the category."""
        return cls(
            request_id=request_id,
            category=category,
            code=code or f"{category.value.upper()}_ERROR",
            message=str(error),
            severity=severity,
            details=dict(details or {}),
            trace="".join(traceback.format_exception(error)) if include_traceback else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_id": self.error_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp,
            "error": {
                "category": self.category.value,
                "severity": self.severity.value,
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
            "meta": {"traceback": self.trace},
        }


def error_response(
    request: Request,
    error: Exception,
    status_code: int,
    category: ErrorCategory,
    *,
    severity: ErrorSeverity = ErrorSeverity.WARNING,
    code: str | None = None,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    include_traceback: bool = False,
) -> JSONResponse:
    """Render an exception as a JSON error envelope."""
    envelope = ErrorEnvelope.from_exception(
        request_id_of(request),
        error,
        category,
        severity=severity,
        code=code,
        details=details,
        include_traceback=include_traceback,
    )
    return JSONResponse(status_code=status_code, content=envelope.to_dict(), headers=headers)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers for a JSON-only API."""

    def __init__(self, app, strict_transport: bool = True):
        super().__init__(app)
        self.strict_transport = strict_transport

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers.update(_SECURITY_HEADERS)
        if self.strict_transport:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Assigns the correlation id used by admission logging and reports duration.

    A client-supplied ``X-Request-ID`` is reused so uploads can be traced
    end to end; otherwise a fresh UUID is issued.
    """

    def __init__(self, app, slow_request_ms: float | None = None):
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[DURATION_HEADER] = f"{duration_ms:.2f}"
        if self.slow_request_ms is not None and duration_ms >= self.slow_request_ms:
            logger.info(
                "Slow request %s %s took %.2fms",
                request.method,
                request.url.path,
                duration_ms,
                extra={"request_id": request_id},
            )
        return response
