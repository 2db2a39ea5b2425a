"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from alerthub.app.core.errors import (
        AlertHubError,
        NotFoundError,
        ValidationError,
        AuthorizationError,
        StoreUnavailable,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id="ALR-0A1B2C3D4E5F")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from alerthub.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertHubError(Exception):
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


class NotFoundError(AlertHubError):
    """Resource unknown or past its retention window (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(AlertHubError):
    """Input validation failed (400). The client must correct and resubmit."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class AuthenticationError(AlertHubError):
    """Missing or unverifiable credentials (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTHENTICATION_REQUIRED",
        )


class AuthorizationError(AlertHubError):
    """Caller is authenticated but lacks the admin claim (403)."""

    def __init__(self, action: str = "resolve", subject_id: Optional[str] = None):
        details: Dict[str, Any] = {"action": action}
        if subject_id:
            details["subject_id"] = subject_id
        super().__init__(
            message=f"Not authorised to {action} alerts",
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class StoreUnavailable(AlertHubError):
    """Persistence layer unreachable (503). Safe for the caller to retry."""

    def __init__(self, operation: str, message: str = ""):
        super().__init__(
            message=f"Alert store unavailable during {operation}: {message}".rstrip(": "),
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation, "retryable": True},
        )


class DeliveryFailure(AlertHubError):
    """
    Push to one observer session failed.

    Contained inside the broadcaster/resync subsystem — never reaches a
    publisher or an HTTP client.
    """

    def __init__(self, session_id: str, reason: str = ""):
        super().__init__(
            message=f"Delivery to session {session_id} failed: {reason}",
            status_code=500,
            error_code="DELIVERY_FAILURE",
            details={"session_id": session_id},
        )
        self.session_id = session_id
        self.reason = reason


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

    headers = None
    if status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}

    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(AlertHubError)
    async def handle_alerthub_error(request: Request, exc: AlertHubError):
        log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            log_level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning("Request validation failed: %s", errors)
        return _build_error_response(
            400, "VALIDATION_ERROR", "Request validation failed",
            {"errors": errors}, request,
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
