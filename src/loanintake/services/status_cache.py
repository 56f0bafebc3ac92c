"""Application status cache and the cache-aside status lookup.

The cache is advisory: it maps an application ID to its last known status
for a bounded TTL and may lag the relational store by up to that TTL.
Every status handed to callers is tagged with the source it came from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from redis.asyncio import Redis
from redis.exceptions import RedisError

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from redis.asyncio import ConnectionPool

    from loanintake.core.config import CacheSettings
    from loanintake.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class StatusCacheError(Exception):
    """Raised when the cache cannot be read or written."""

    pass


class StatusSource(str, Enum):
    """Where a returned status was read from."""

    CACHE = "cache"
    DATABASE = "database"


@dataclass(frozen=True)
class StatusResult:
    """An application status tagged with its source."""

    application_id: uuid.UUID
    status: str
    source: StatusSource


class StatusCache:
    """TTL-bounded status cache stored as plain Redis keys."""

    def __init__(
        self,
        client_factory: Callable[[], Redis],
        *,
        ttl_seconds: int = 300,
        key_prefix: str = "status:",
    ) -> None:
        self._client_factory = client_factory
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: CacheSettings, pool: ConnectionPool) -> StatusCache:
        return cls(
            lambda: Redis(connection_pool=pool),
            ttl_seconds=settings.status_ttl_seconds,
            key_prefix=settings.key_prefix,
        )

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def key_for(self, application_id: uuid.UUID) -> str:
        return f"{self._key_prefix}{application_id}"

    async def get(self, application_id: uuid.UUID) -> str | None:
        """Get a cached status, or None on a miss.

        Raises:
            StatusCacheError: If the cache cannot be read.
        """
        try:
            async with self._client_factory() as client:
                value = await client.get(self.key_for(application_id))
        except RedisError as e:
            raise StatusCacheError(f"Cache read failed: {e}") from e
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def set(self, application_id: uuid.UUID, status: str, ttl: int | None = None) -> None:
        """Cache a status for ``ttl`` seconds (the configured TTL by default).

        Raises:
            StatusCacheError: If the cache cannot be written.
        """
        try:
            async with self._client_factory() as client:
                await client.set(
                    self.key_for(application_id),
                    status,
                    ex=ttl or self._ttl_seconds,
                )
        except RedisError as e:
            raise StatusCacheError(f"Cache write failed: {e}") from e


class StatusLookupService:
    """Cache-aside status read path.

    Checks the cache first, falls back to the metadata store on a miss and
    repopulates the cache. A cache failure never fails the lookup; the
    database answer is returned instead.
    """

    def __init__(self, cache: StatusCache, store: MetadataStore) -> None:
        self._cache = cache
        self._store = store

    async def get_status(self, application_id: uuid.UUID) -> StatusResult:
        """Look up an application's status.

        Raises:
            ApplicationNotFoundError: If the application does not exist.
            MetadataUnavailableError: If the database cannot be reached on a miss.
        """
        try:
            cached = await self._cache.get(application_id)
        except StatusCacheError:
            logger.warning(
                "Status cache read failed, falling back to database",
                exc_info=True,
                extra={"application_id": str(application_id)},
            )
            cached = None

        if cached is not None:
            return StatusResult(application_id, cached, StatusSource.CACHE)

        status = (await self._store.get_status(application_id)).value

        try:
            await self._cache.set(application_id, status)
        except StatusCacheError:
            logger.warning(
                "Status cache write failed",
                exc_info=True,
                extra={"application_id": str(application_id)},
            )

        return StatusResult(application_id, status, StatusSource.DATABASE)
