"""Logging setup with correlation ID stamping.

Every record emitted while a request is in flight carries the request's
correlation ID, so log lines from the API, the submission coordinator and
its collaborators can be joined with the SubmissionEvent on the log.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar

# Set by the correlation ID middleware for the duration of a request
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s]: %(message)s"


def get_correlation_id() -> str | None:
    """Get the correlation ID of the current request, if any."""
    return correlation_id_ctx.get()


class CorrelationIdFilter(logging.Filter):
    """Stamp records with the current correlation ID (``-`` outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_ctx.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler whose format includes the correlation ID.

    Safe to call more than once; the handler is only installed the first time.

    Args:
        level: Root log level name.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers:
        if any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)
