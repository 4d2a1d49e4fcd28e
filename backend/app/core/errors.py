"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the alert lifecycle
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        AlertSystemError,
        NotFoundError,
        ValidationError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id=42)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertSystemError(Exception):
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


class NotFoundError(AlertSystemError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class AlertNotFound(NotFoundError):
    def __init__(self, alert_id: int):
        super().__init__("Alert", id=alert_id)


class IncidentNotFound(NotFoundError):
    def __init__(self, incident_id: int):
        super().__init__("Incident", id=incident_id)


class TemplateNotFound(NotFoundError):
    def __init__(self, template_id: int):
        super().__init__("Template", id=template_id)


class ValidationError(AlertSystemError):
    """
    Input validation failed (422).

    ``errors`` maps field names to messages so callers can surface
    field-level detail.
    """

    def __init__(
        self,
        message: str = "Invalid input",
        *,
        field: Optional[str] = None,
        errors: Optional[Dict[str, str]] = None,
        **details: Any,
    ):
        d = {**details}
        field_errors = dict(errors or {})
        if field:
            d["field"] = field
            field_errors.setdefault(field, message)
        if field_errors:
            d["errors"] = field_errors
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )
        self.errors = field_errors


class InvalidStateError(AlertSystemError):
    """Operation not allowed in the resource's current state (409)."""

    def __init__(self, message: str, *, current_status: Optional[str] = None, **details: Any):
        d = {**details}
        if current_status:
            d["current_status"] = current_status
        super().__init__(
            message=message,
            status_code=409,
            error_code="INVALID_STATE",
            details=d,
        )


class ImmutableSentAlertError(AlertSystemError):
    """Content edit attempted on an alert that was already sent (409)."""

    def __init__(self, alert_id: int, fields: list):
        super().__init__(
            message="Cannot modify core details of an alert that has already been sent",
            status_code=409,
            error_code="IMMUTABLE_SENT_ALERT",
            details={"alert_id": alert_id, "fields": sorted(fields)},
        )


class CancellationWindowExpiredError(AlertSystemError):
    """Cancellation attempted after the allowed window (409)."""

    def __init__(self, alert_id: int, window_seconds: int, elapsed_seconds: float):
        super().__init__(
            message=(
                f"Cannot cancel an alert that was sent more than "
                f"{window_seconds // 60} minutes ago"
            ),
            status_code=409,
            error_code="CANCELLATION_WINDOW_EXPIRED",
            details={
                "alert_id": alert_id,
                "window_seconds": window_seconds,
                "elapsed_seconds": round(elapsed_seconds, 1),
            },
        )


class DuplicateAcknowledgmentError(AlertSystemError):
    """User already acknowledged this alert (409)."""

    def __init__(self, alert_id: int, user_id: int):
        super().__init__(
            message="You have already acknowledged this alert",
            status_code=409,
            error_code="DUPLICATE_ACKNOWLEDGMENT",
            details={"alert_id": alert_id, "user_id": user_id},
        )


class PersistenceError(AlertSystemError):
    """Storage write or read failed (500)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Storage operation '{operation}' failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, **details},
        )


class AuthorizationError(AlertSystemError):
    """Actor lacks the role required for the operation (403)."""

    def __init__(self, role: str, allowed: list):
        super().__init__(
            message=f"Role '{role}' is not allowed to perform this action",
            status_code=403,
            error_code="FORBIDDEN",
            details={"role": role, "allowed_roles": allowed},
        )


class AuthenticationError(AlertSystemError):
    """Caller identity missing or malformed (401)."""

    def __init__(self, message: str = "Actor identity headers are required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHENTICATED",
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

    @app.exception_handler(AlertSystemError)
    async def handle_alert_error(request: Request, exc: AlertSystemError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = {
            ".".join(str(p) for p in err["loc"] if p != "body") or "body": err["msg"]
            for err in exc.errors()
        }
        logger.warning("Request validation failed: %s", errors)
        return _build_error_response(
            422, "VALIDATION_ERROR", "Invalid request", {"errors": errors}, request,
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
