"""Process-wide settings accessor.

    from loanintake.core.settings import get_settings

    ttl = get_settings().cache.status_ttl_seconds

Settings are read from the environment once. Invalid configuration stops
the process at startup instead of surfacing on the first request. Tests
reset the cache with clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from loanintake.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _describe(error: ValidationError) -> str:
    return "\n".join(
        f"  - {'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
        for item in error.errors()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: If the environment does not describe a valid configuration.
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid configuration:\n%s", _describe(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid configuration: %s (field: %s)", e.message, e.field or "unknown")
        raise SystemExit(1) from e
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call reloads them."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Settings, or None when the configuration is invalid."""
    try:
        return get_settings()
    except SystemExit:
        return None
