"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Propagation policy for the alert pipeline:
    ValidationError     — malformed inbound event; raised before any side effect
    ChannelSendError    — one recipient / one batch failed; absorbed into the
                          dispatch result, never raised to the dispatch caller
    RateLimitExceeded   — caller must surface the retry-after time (HTTP 429)
    AuditWriteFailure   — raised by delivery-log sinks, always swallowed by
                          the DeliveryLogger

Usage:
    from backend.hazardwatch.core.errors import (
        HazardWatchError,
        NotFoundError,
        ValidationError,
        RateLimitExceeded,
        register_error_handlers,
    )

    raise ValidationError("location_key is required", field="location_key")
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.hazardwatch.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class HazardWatchError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(HazardWatchError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(HazardWatchError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class ExternalServiceError(HazardWatchError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class ChannelSendError(ExternalServiceError):
    """A recipient or a whole batch could not be sent on a channel."""

    def __init__(self, channel: str, message: str = "", *, recipient: Optional[str] = None):
        details: Dict[str, Any] = {"channel": channel}
        if recipient:
            details["recipient"] = recipient
        super().__init__(f"{channel}-channel", message, **details)
        self.channel = channel
        self.recipient = recipient
        self.error_code = "CHANNEL_SEND_ERROR"


class RateLimitExceeded(HazardWatchError):
    """Rate limit exceeded (429)."""

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after: int = 60,
        reset_at: Optional[datetime] = None,
    ):
        details: Dict[str, Any] = {"retry_after_seconds": retry_after}
        if reset_at is not None:
            details["reset_at"] = reset_at.isoformat()
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details=details,
        )
        self.retry_after = retry_after
        self.reset_at = reset_at


class AuditWriteFailure(HazardWatchError):
    """Delivery audit record could not be persisted (never surfaced to callers)."""

    def __init__(self, record_id: str, message: str = ""):
        super().__init__(
            message=f"Audit write for {record_id} failed: {message}",
            status_code=500,
            error_code="AUDIT_WRITE_FAILURE",
            details={"record_id": record_id},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limit(request: Request, exc: RateLimitExceeded):
        logger.warning("Rate limit hit on %s: retry in %ds", request.url.path, exc.retry_after)
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(HazardWatchError)
    async def handle_app_error(request: Request, exc: HazardWatchError):
        logger.error(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
