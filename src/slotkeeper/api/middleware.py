"""API error handling with consistent error responses.

Registers FastAPI exception handlers that convert core exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``InvalidRangeError`` / ``PastWindowError`` → 400 Bad Request
- ``ForbiddenError`` → 403 Forbidden
- ``NotFoundError`` → 404 Not Found
- ``ConflictError`` → 409 Conflict
- ``PreconditionFailedError`` → 412 Precondition Failed
- ``ProviderUnavailableError`` → 503 Service Unavailable
- ``HTTPException`` → its own status
- Request validation errors → 422 Unprocessable Entity
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from slotkeeper.api.models import ErrorDetail, ErrorResponse
from slotkeeper.errors import (
    ConflictError,
    ForbiddenError,
    InvalidRangeError,
    NotFoundError,
    PastWindowError,
    PreconditionFailedError,
    ProviderUnavailableError,
    SlotkeeperError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[SlotkeeperError], int], ...] = (
    (InvalidRangeError, 400),
    (PastWindowError, 400),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PreconditionFailedError, 412),
    (ProviderUnavailableError, 503),
)


def status_for(exc: SlotkeeperError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_response(status_code: int, code: str, message: str, *, retryable: bool = False):
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, retryable=retryable))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_slotkeeper_error(request: Request, exc: SlotkeeperError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc)
    return _error_response(status_code, exc.code, str(exc), retryable=exc.retryable)


async def _handle_http_exception(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    code = {401: "UNAUTHORIZED", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}.get(
        exc.status_code, "HTTP_ERROR"
    )
    return _error_response(exc.status_code, code, str(exc.detail))


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 422 with the first validation problem as the message."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    logger.info("Validation error: %s", message)
    return _error_response(422, "VALIDATION_ERROR", message)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(SlotkeeperError, _handle_slotkeeper_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
