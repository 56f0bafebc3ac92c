"""Correlation ID middleware for cross-system tracing.

Adds an X-Correlation-ID header to all responses. If the client provides a
correlation ID it is used; otherwise a new UUID is generated.

The ID is:
- Stamped on every log line emitted while the request is handled
- Embedded in the SubmissionEvent published for a new application
- Echoed back to the client
"""

import uuid
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from loanintake.core.logging import correlation_id_ctx

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Longer client-supplied values are replaced rather than logged
_MAX_CORRELATION_ID_LENGTH = 128


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware that ensures every request has a correlation ID."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        """Process the request and add X-Correlation-ID to the response.

        Args:
            request: The incoming HTTP request.
            call_next: The next middleware/handler in the chain.

        Returns:
            The response with X-Correlation-ID header added.
        """
        correlation_id = request.headers.get(CORRELATION_ID_HEADER, "").strip()
        if not correlation_id or len(correlation_id) > _MAX_CORRELATION_ID_LENGTH:
            correlation_id = str(uuid.uuid4())

        token = correlation_id_ctx.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_ctx.reset(token)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
