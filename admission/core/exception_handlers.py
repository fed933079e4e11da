"""Global exception handlers for consistent error responses.

Domain errors raised by route handlers are turned into JSON responses of
the form ``{"error": {code, message, request_id, details?}}``:

- ValidationAppError → 400
- AuthenticationAppError → 403
- ConfigurationAppError → 500
- StoreUnavailableError → 503 (only if one escapes the store selector)
- anything else → generic 500 (safety net, no internals leaked)

Rate-limit rejections are not exceptions; the limiter answers 429 itself
before the route is reached.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from admission.core.errors import (
    AppError,
    AuthenticationAppError,
    ConfigurationAppError,
    StoreUnavailableError,
)
from admission.core.logging import get_request_id

logger = logging.getLogger(__name__)


_STATUS_BY_TYPE: tuple[tuple[type[AppError], int], ...] = (
    (AuthenticationAppError, 403),
    (ConfigurationAppError, 500),
    (StoreUnavailableError, 503),
)


def _status_for(exc: AppError) -> int:
    for error_type, status_code in _STATUS_BY_TYPE:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError with the status code matching its type."""
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_id": get_request_id(),
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors.

    Logs the failure with request context and returns a generic message;
    exception text and tracebacks never reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
