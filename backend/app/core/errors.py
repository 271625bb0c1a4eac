"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the notification engine
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Failure domains:

    Error                        Scope                     Escalates?
    ─────────────────────────    ──────────────────────    ──────────────────
    ResolutionError              whole dispatch call       yes — to caller
    ChannelSendError             one user × one channel    no — recorded
    ConfigurationError           one channel, all users    no — channel off
    StatsWriteError              counter write only        no — logged
    AlertNotDispatchableError    whole dispatch call       yes — to caller

Usage:
    from backend.app.core.errors import ResolutionError, register_error_handlers

    raise ResolutionError("user store unreachable")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotificationEngineError(Exception):
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


class NotFoundError(NotificationEngineError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(NotificationEngineError):
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


class ResolutionError(NotificationEngineError):
    """User store could not be queried while resolving recipients (503)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"Recipient resolution failed: {message}",
            status_code=503,
            error_code="RESOLUTION_ERROR",
            details=details,
        )


class ChannelSendError(NotificationEngineError):
    """A provider rejected or failed a single send (502)."""

    def __init__(
        self,
        channel: str,
        message: str = "",
        *,
        retryable: bool = False,
        **details: Any,
    ):
        super().__init__(
            message=message or f"{channel} send failed",
            status_code=502,
            error_code="CHANNEL_SEND_ERROR",
            details={"channel": channel, "retryable": retryable, **details},
        )
        self.channel = channel
        self.retryable = retryable


class ConfigurationError(NotificationEngineError):
    """A channel provider is missing credentials or settings (500)."""

    def __init__(self, component: str, message: str = "", **details: Any):
        super().__init__(
            message=f"{component} is not configured: {message}",
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details={"component": component, **details},
        )
        self.component = component


class StatsWriteError(NotificationEngineError):
    """Aggregate counter update on the alert failed (500)."""

    def __init__(self, alert_id: str, message: str = "", *, attempts: int = 1):
        super().__init__(
            message=f"Notification counters for {alert_id} not written: {message}",
            status_code=500,
            error_code="STATS_WRITE_ERROR",
            details={"alert_id": alert_id, "attempts": attempts},
        )
        self.alert_id = alert_id


class AlertNotDispatchableError(NotificationEngineError):
    """Alert status forbids sending notifications (409)."""

    def __init__(self, alert_id: str, status: str):
        super().__init__(
            message=f"Alert {alert_id} has status '{status}' and cannot be dispatched",
            status_code=409,
            error_code="ALERT_NOT_DISPATCHABLE",
            details={"alert_id": alert_id, "status": status},
        )


class InvalidStatusTransitionError(NotificationEngineError):
    """Alert lifecycle transition not allowed (409)."""

    def __init__(self, alert_id: str, current: str, requested: str):
        super().__init__(
            message=f"Alert {alert_id} cannot move from '{current}' to '{requested}'",
            status_code=409,
            error_code="INVALID_STATUS_TRANSITION",
            details={"alert_id": alert_id, "current": current, "requested": requested},
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

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(NotificationEngineError)
    async def handle_engine_error(request: Request, exc: NotificationEngineError):
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
