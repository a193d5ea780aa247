"""Server error handling - sanitizes errors for client responses.

Prevents exposure of sensitive information like file paths, stack traces,
script source and internal configuration to HTTP clients.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from chatflow.core.errors import (
    ConfigError,
    FlowNotFoundError,
    FlowValidationError,
    GraphIntegrityError,
    SessionNotFoundError,
    StaleSessionError,
    StorageError,
    ValidationError,
    WebhookAuthError,
    WebhookError,
)
from chatflow.runtime.conversation import create_error_reference

logger = logging.getLogger(__name__)


# Error messages safe to expose to clients
SAFE_ERROR_MESSAGES = {
    "ConfigError": "Configuration error. Please contact support.",
    "ValidationError": "Invalid request data.",
    "FlowValidationError": "The flow definition is invalid.",
    "GraphIntegrityError": "The flow cannot be executed. Please contact support.",
    "SessionNotFoundError": "Session not found.",
    "FlowNotFoundError": "Flow not found.",
    "StaleSessionError": "The session was updated by another request. Please retry.",
    "StorageError": "Storage is temporarily unavailable. Please try again.",
    "WebhookError": "This flow cannot be started through a webhook.",
    "WebhookAuthError": "Invalid webhook credentials.",
}

DEFAULT_ERROR_MESSAGE = "An internal error occurred. Please try again later."

# Most specific classes first
_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (WebhookAuthError, 401),
    (WebhookError, 404),
    (SessionNotFoundError, 404),
    (FlowNotFoundError, 404),
    (StaleSessionError, 409),
    (StorageError, 503),
    (ValidationError, 400),
    (FlowValidationError, 422),
    (GraphIntegrityError, 500),
    (ConfigError, 500),
]


def get_safe_error_message(exception: Exception) -> str:
    """Get client-safe error message for exception type."""
    exception_type = type(exception).__name__
    return SAFE_ERROR_MESSAGES.get(exception_type, DEFAULT_ERROR_MESSAGE)


def get_http_status_for_exception(exception: Exception) -> int:
    """Map exception types to appropriate HTTP status codes."""
    for exception_type, status_code in _STATUS_CODES:
        if isinstance(exception, exception_type):
            return status_code
    return 500


def log_error_with_context(
    error_ref: str,
    exception: Exception,
    session_id: str | None = None,
    endpoint: str | None = None,
) -> None:
    """Log full error details server-side for debugging."""
    logger.error(
        f"[{error_ref}] Error in {endpoint or 'unknown'} "
        f"for session {session_id or 'unknown'}: {type(exception).__name__}: {exception}",
        exc_info=True,
        extra={
            "error_reference": error_ref,
            "session_id": session_id,
            "endpoint": endpoint,
            "exception_type": type(exception).__name__,
        },
    )


def _error_content(exception: Exception, error_ref: str) -> dict[str, str]:
    return {
        "error": get_safe_error_message(exception),
        "reference": error_ref,
        "message": "If this problem persists, contact support with the reference code.",
    }


async def chatflow_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for ChatflowError raised outside a turn (lookups, webhook auth...)."""
    error_ref = create_error_reference()
    status_code = get_http_status_for_exception(exc)
    session_id = request.path_params.get("session_id")
    if status_code >= 500:
        log_error_with_context(error_ref, exc, session_id, request.url.path)
    else:
        logger.info(
            f"[{error_ref}] {request.url.path} -> {status_code}: {type(exc).__name__}: {exc}",
            extra={"error_reference": error_ref, "session_id": session_id},
        )
    return JSONResponse(status_code=status_code, content=_error_content(exc, error_ref))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for uncaught exceptions."""
    error_ref = create_error_reference()
    log_error_with_context(error_ref, exc, request.path_params.get("session_id"), request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": DEFAULT_ERROR_MESSAGE,
            "reference": error_ref,
            "message": "If this problem persists, contact support with the reference code.",
        },
    )

