"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Duplicate webhooks and unmapped alert types are NOT errors; they are
answered with success-shaped bodies by the webhook route.

Usage:
    from backend.app.core.errors import (
        FleetAlertError,
        ValidationError,
        SignatureError,
        ForbiddenSourceError,
        StorageError,
        register_error_handlers,
    )

    raise ValidationError("missing phone", field="phone_number")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class FleetAlertError(Exception):
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


class ValidationError(FleetAlertError):
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


class SignatureError(FleetAlertError):
    """Webhook HMAC signature missing or wrong (401)."""

    def __init__(self, message: str = "bad signature"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="BAD_SIGNATURE",
        )


class ForbiddenSourceError(FleetAlertError):
    """Webhook source IP not on the allow-list (403)."""

    def __init__(self, client_ip: str):
        super().__init__(
            message="forbidden",
            status_code=403,
            error_code="FORBIDDEN_SOURCE",
            details={"client_ip": client_ip},
        )


class StorageError(FleetAlertError):
    """Alert/Message persistence failed (500)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"Database operation failed: {message}" if message else "Database operation failed",
            status_code=500,
            error_code="STORAGE_ERROR",
            details=details,
        )


class ProviderValidationError(ValidationError):
    """WhatsApp request rejected locally before any network call."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message, field=field, service="whatsapp")


class ProviderTransportError(FleetAlertError):
    """WhatsApp provider unreachable: timeout, DNS, refused (502)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"External service 'whatsapp' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": "whatsapp", **details},
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
    *,
    include_request: bool = False,
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

    if request is not None and include_request:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI, settings: Settings) -> None:
    """Register all exception handlers on the FastAPI app."""
    include_request = not settings.is_production

    @app.exception_handler(FleetAlertError)
    async def handle_fleet_alert_error(request: Request, exc: FleetAlertError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request, include_request=include_request,
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
            include_request=include_request,
        )
