"""Loan intake API middleware components.

This module provides middleware for:
- Correlation ID tracking across services and log lines
- Consistent error response formatting
"""

from loanintake.api.middleware.correlation_id import (
    CORRELATION_ID_HEADER,
    CorrelationIdMiddleware,
)
from loanintake.api.middleware.errors import (
    APIError,
    ErrorHandlerMiddleware,
    NotFoundError,
    ServiceError,
    ValidationAPIError,
    api_error_handler,
    build_error_response,
    http_exception_handler,
    validation_exception_handler,
)

__all__ = [
    "CORRELATION_ID_HEADER",
    "APIError",
    "CorrelationIdMiddleware",
    "ErrorHandlerMiddleware",
    "NotFoundError",
    "ServiceError",
    "ValidationAPIError",
    "api_error_handler",
    "build_error_response",
    "http_exception_handler",
    "validation_exception_handler",
]
