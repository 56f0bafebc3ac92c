"""Submission event publisher backed by Redis Streams.

Each SubmissionEvent is appended (XADD) to one of a fixed number of
partition streams. The partition is a stable hash of the application ID, so
every event of one application lands on the same ordered stream. Delivery
is at-least-once; consumers deduplicate on ``eventId``.

A Redis client is checked out from the shared connection pool for each
publish and released when the publish completes:

    publisher = EventPublisher.from_settings(settings.events, pool)
    ack = await publisher.publish(event)
"""

from __future__ import annotations

import asyncio
import json
import logging
import zlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from decimal import Decimal

    from redis.asyncio import ConnectionPool

    from loanintake.core.config import EventLogSettings

logger = logging.getLogger(__name__)

EVENT_TYPE_APPLICATION_SUBMITTED = "ApplicationSubmitted"


class EventPublishError(Exception):
    """Base exception for event publishing."""

    pass


class BrokerUnavailableError(EventPublishError):
    """Raised when the event log cannot be reached."""

    pass


class PublishTimeoutError(EventPublishError):
    """Raised when the event log does not acknowledge in time."""

    pass


@dataclass(frozen=True)
class DocumentRef:
    """Compact document summary carried in the event payload."""

    document_id: uuid.UUID
    document_type: str
    file_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "documentId": str(self.document_id),
            "documentType": self.document_type,
            "fileName": self.file_name,
        }


@dataclass(frozen=True)
class SubmissionEvent:
    """Domain event announcing a newly submitted application."""

    event_id: uuid.UUID
    application_id: uuid.UUID
    customer_id: str
    loan_amount: Decimal
    loan_purpose: str
    income: Decimal
    correlation_id: str | None = None
    documents: tuple[DocumentRef, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_type: str = EVENT_TYPE_APPLICATION_SUBMITTED

    def to_dict(self) -> dict[str, Any]:
        """Wire representation of the event."""
        return {
            "eventId": str(self.event_id),
            "eventType": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "applicationId": str(self.application_id),
            "customerId": self.customer_id,
            "correlationId": self.correlation_id,
            "payload": {
                "loanAmount": float(self.loan_amount),
                "loanPurpose": self.loan_purpose,
                "income": float(self.income),
                "documents": [doc.to_dict() for doc in self.documents],
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


@dataclass(frozen=True)
class PublishAck:
    """Acknowledgement of a durably appended event."""

    event_id: uuid.UUID
    stream: str
    entry_id: str
    partition: int


class EventPublisher:
    """Appends SubmissionEvents to partitioned Redis streams."""

    def __init__(
        self,
        client_factory: Callable[[], Redis],
        stream: str,
        *,
        partitions: int = 1,
        max_len: int | None = None,
        timeout: float = 5.0,
    ) -> None:
        """Initialize the publisher.

        Args:
            client_factory: Returns a client for one publish; the client is
                closed afterwards, returning its connection to the pool.
            stream: Base stream name.
            partitions: Number of partition streams.
            max_len: Approximate number of entries kept per stream.
            timeout: Seconds to wait for the append to be acknowledged.
        """
        if partitions < 1:
            msg = "partitions must be >= 1"
            raise ValueError(msg)
        self._client_factory = client_factory
        self._stream = stream
        self._partitions = partitions
        self._max_len = max_len
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: EventLogSettings, pool: ConnectionPool) -> EventPublisher:
        """Create a publisher drawing clients from a shared connection pool."""
        return cls(
            lambda: Redis(connection_pool=pool),
            settings.stream,
            partitions=settings.partitions,
            max_len=settings.max_len,
            timeout=settings.publish_timeout,
        )

    def partition_for(self, application_id: uuid.UUID) -> int:
        """Stable partition of an application's events."""
        return zlib.crc32(str(application_id).encode()) % self._partitions

    def stream_for(self, partition: int) -> str:
        """Stream name of a partition."""
        if self._partitions == 1:
            return self._stream
        return f"{self._stream}:{partition}"

    async def publish(self, event: SubmissionEvent) -> PublishAck:
        """Append an event and wait for the acknowledgement.

        Args:
            event: Event to publish.

        Returns:
            PublishAck with the stream and entry ID assigned by the log.

        Raises:
            BrokerUnavailableError: If the event log cannot be reached.
            PublishTimeoutError: If the append is not acknowledged in time.
            EventPublishError: For any other failure.
        """
        partition = self.partition_for(event.application_id)
        stream = self.stream_for(partition)
        fields = {
            "key": str(event.application_id),
            "event_id": str(event.event_id),
            "event_type": event.event_type,
            "body": event.to_json(),
        }

        try:
            async with self._client_factory() as client:
                entry_id = await asyncio.wait_for(
                    client.xadd(
                        stream,
                        fields,
                        maxlen=self._max_len,
                        approximate=True,
                    ),
                    timeout=self._timeout,
                )
        except (TimeoutError, RedisTimeoutError) as e:
            raise PublishTimeoutError(
                f"Event {event.event_id} not acknowledged within {self._timeout}s"
            ) from e
        except (RedisConnectionError, OSError) as e:
            raise BrokerUnavailableError(f"Event log unreachable: {e}") from e
        except RedisError as e:
            raise EventPublishError(f"Failed to publish event {event.event_id}: {e}") from e

        if isinstance(entry_id, bytes):
            entry_id = entry_id.decode()

        logger.info(
            "Published %s event %s to %s",
            event.event_type,
            event.event_id,
            stream,
            extra={
                "application_id": str(event.application_id),
                "event_id": str(event.event_id),
                "stream": stream,
                "entry_id": entry_id,
            },
        )
        return PublishAck(
            event_id=event.event_id,
            stream=stream,
            entry_id=entry_id,
            partition=partition,
        )
