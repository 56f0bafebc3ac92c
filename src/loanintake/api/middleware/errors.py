"""Error handling for consistent JSON error responses.

Every error leaving the API has the same shape:

    {"error": "<human-readable message>"}

Internal exception detail is logged with the correlation ID and never
returned to the client.
"""

import logging
from collections.abc import Callable

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error."


class APIError(Exception):
    """Base exception for API errors.

    Raise from route handlers to return a specific status and message.
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        """Initialize API error.

        Args:
            message: Client-facing error description.
            status_code: HTTP status code to return.
        """
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error (404)."""

    def __init__(self, message: str = "Not found.") -> None:
        super().__init__(message, status_code=404)


class ValidationAPIError(APIError):
    """Request validation error (400)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=400)


class ServiceError(APIError):
    """Server-side failure (500) with a generic client-facing message."""

    def __init__(self, message: str = INTERNAL_ERROR_MESSAGE) -> None:
        super().__init__(message, status_code=500)


def build_error_response(message: str, status_code: int) -> JSONResponse:
    """The one error body the API returns: ``{"error": message}``."""
    return JSONResponse(status_code=status_code, content={"error": message})


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return build_error_response(exc.message, exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = build_error_response(str(exc.detail), exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first["loc"] if part not in ("body", "header"))
        message = f"Invalid request: {field}: {first['msg']}." if field else first["msg"]
    else:
        message = "Invalid request."
    return build_error_response(message, 400)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Last-resort handler turning stray exceptions into ``{"error": ...}``.

    Unexpected exceptions are logged with their traceback and answered with
    a generic 500; their detail never reaches the client.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except APIError as exc:
            return build_error_response(exc.message, exc.status_code)
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(INTERNAL_ERROR_MESSAGE, 500)
