"""
FastAPI exception handlers for the usage metering API.

This module provides centralized exception handling that:
- Maps metering exceptions to HTTP responses
- Handles request validation errors with clean messages
- Reports unexpected exceptions to Sentry

All error responses follow the format:
{
    "success": false,
    "error": "Human-readable message",
    "error_code": "MACHINE_READABLE_CODE",
    "details": {}  # Optional additional context
}
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from metering.config import get_settings
from metering.exceptions import ErrorCode, MeteringException

logger = logging.getLogger(__name__)

# Detail keys that are safe to return to clients
SAFE_DETAIL_KEYS = frozenset({
    "tier_id", "user_id", "quantity", "attempts", "structure",
    "errors", "error_reference", "sentry_event_id",
})


def sanitize_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only whitelisted detail keys."""
    if not details:
        return {}
    return {k: v for k, v in details.items() if k in SAFE_DETAIL_KEYS}


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Format validation errors into a field/message list.

    Args:
        errors: List of Pydantic error dictionaries.

    Returns:
        At most ten formatted errors.
    """
    formatted = []
    for error in errors:
        loc = error.get("loc", [])
        field_parts = [str(p) for p in loc if p != "body"]
        field = ".".join(field_parts) if field_parts else "request"

        error_type = error.get("type", "")
        msg = error.get("msg", "Invalid value")
        if error_type == "missing":
            msg = f"Field '{field}' is required"
        elif error_type == "int_type":
            msg = f"Field '{field}' must be an integer"
        elif error_type == "bool_type":
            msg = f"Field '{field}' must be a boolean"

        formatted.append({"field": field, "message": msg})

    return formatted[:10]


def create_error_response(
    status_code: int,
    error: str,
    error_code: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Create a response in the standard error format."""
    content: Dict[str, Any] = {
        "success": False,
        "error": error,
        "error_code": error_code,
    }
    sanitized = sanitize_details(details or {})
    if sanitized:
        content["details"] = sanitized

    return JSONResponse(status_code=status_code, content=content, headers=headers)


def report_to_sentry(
    exc: Exception,
    request: Optional[Request] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Report an exception to Sentry with request context.

    Returns:
        Sentry event ID if reported, None otherwise.
    """
    try:
        client = sentry_sdk.get_client()
        if not client.is_active():
            return None

        with sentry_sdk.push_scope() as scope:
            if request:
                scope.set_context("request", {
                    "method": request.method,
                    "path": request.url.path,
                })
                request_id = request.headers.get("X-Request-ID")
                if request_id:
                    scope.set_tag("request_id", request_id)

            if extra_context:
                scope.set_context("extra", extra_context)

            return sentry_sdk.capture_exception(exc)

    except Exception as e:
        logger.warning(f"Failed to report exception to Sentry: {e}")
        return None


# =============================================================================
# Exception Handlers
# =============================================================================

async def metering_exception_handler(
    request: Request,
    exc: MeteringException,
) -> JSONResponse:
    """Handle MeteringException and subclasses."""
    log_message = f"{exc.__class__.__name__}: {exc.message}"
    if exc.internal_message:
        log_message += f" | Internal: {exc.internal_message}"

    if exc.status_code >= 500:
        logger.error(log_message)
        report_to_sentry(exc, request)
    elif exc.status_code >= 400:
        logger.warning(log_message)
    else:
        logger.info(log_message)

    headers = {"Retry-After": "5"} if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE else None

    return create_error_response(
        status_code=exc.status_code,
        error=exc.message,
        error_code=exc.error_code.value,
        details=exc.details,
        headers=headers,
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Engine argument errors (non-positive quantities) become 400s."""
    logger.warning(f"Invalid argument on {request.method} {request.url.path}: {exc}")
    return create_error_response(
        status_code=status.HTTP_400_BAD_REQUEST,
        error=str(exc),
        error_code="VALIDATION_ERROR",
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle FastAPI request validation errors."""
    errors = format_validation_errors(exc.errors())

    logger.warning(
        f"Validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )

    if len(errors) == 1:
        error_message = errors[0]["message"]
    else:
        error_message = f"Validation failed with {len(errors)} error(s)"

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error=error_message,
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Convert HTTPException to the standard error format."""
    status_code_mapping = {
        401: "AUTHENTICATION_REQUIRED",
        403: "PERMISSION_DENIED",
        404: "RESOURCE_NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    error_code = status_code_mapping.get(exc.status_code, ErrorCode.INTERNAL_ERROR.value)
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {detail}")

    headers = None
    if exc.headers and "WWW-Authenticate" in exc.headers:
        headers = {"WWW-Authenticate": exc.headers["WWW-Authenticate"]}

    return create_error_response(
        status_code=exc.status_code,
        error=detail,
        error_code=error_code,
        headers=headers,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all for unexpected errors.

    Logs the traceback, reports to Sentry and returns a generic message with
    a reference id.
    """
    error_reference = str(uuid.uuid4())[:8]

    logger.error(
        f"Unhandled exception [ref:{error_reference}] on "
        f"{request.method} {request.url.path}: {exc}",
        exc_info=True,
    )

    event_id = report_to_sentry(
        exc,
        request,
        extra_context={"error_reference": error_reference},
    )

    details: Dict[str, Any] = {"error_reference": error_reference}
    if get_settings().logging.is_production:
        message = "An unexpected error occurred. Please try again later."
    else:
        message = f"Internal server error: {type(exc).__name__}"
        if event_id:
            details["sentry_event_id"] = event_id

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error=message,
        error_code=ErrorCode.INTERNAL_ERROR.value,
        details=details,
    )


# =============================================================================
# Handler Registration
# =============================================================================

def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    app.add_exception_handler(MeteringException, metering_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered successfully")
