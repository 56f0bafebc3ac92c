"""Relational metadata store for applications and their documents.

Writes happen inside an explicit transaction scope owned by one submission:

    async with store.begin_transaction() as txn:
        await txn.insert_application(...)
        await txn.insert_document(...)
        await txn.commit()

Leaving the scope without a commit rolls the transaction back, and the
session is always returned to the pool, on every exit path including
cancellation.

Reads check a session out per call and never share it across requests.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from loanintake.db.models import ApplicationStatus, LoanApplication, LoanDocument

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class MetadataStoreError(Exception):
    """Base exception for metadata store operations."""

    pass


class ConstraintViolationError(MetadataStoreError):
    """Raised when an insert violates a uniqueness or foreign key constraint."""

    pass


class MetadataUnavailableError(MetadataStoreError):
    """Raised when the relational store cannot be reached."""

    pass


class ApplicationNotFoundError(MetadataStoreError):
    """Raised when an application does not exist."""

    def __init__(self, application_id: uuid.UUID) -> None:
        self.application_id = application_id
        super().__init__(f"Application not found: {application_id}")


class TransactionClosedError(MetadataStoreError):
    """Raised when a transaction is used after commit or rollback."""

    pass


@dataclass(frozen=True)
class DocumentSummary:
    """Projection of a committed document row."""

    id: uuid.UUID
    document_type: str
    file_name: str
    file_size: int
    content_type: str
    uploaded_at: datetime


@dataclass(frozen=True)
class ApplicationRecord:
    """Projection of an application row with its documents."""

    id: uuid.UUID
    customer_id: str
    loan_amount: Decimal
    loan_purpose: str
    income: Decimal
    status: ApplicationStatus
    created_at: datetime
    idempotency_key: str | None = None
    documents: list[DocumentSummary] = field(default_factory=list)


def _document_summary(row: LoanDocument) -> DocumentSummary:
    return DocumentSummary(
        id=row.id,
        document_type=row.document_type,
        file_name=row.file_name,
        file_size=row.file_size,
        content_type=row.content_type,
        uploaded_at=row.uploaded_at,
    )


def _application_record(
    row: LoanApplication, documents: list[DocumentSummary] | None = None
) -> ApplicationRecord:
    return ApplicationRecord(
        id=row.id,
        customer_id=row.customer_id,
        loan_amount=row.loan_amount,
        loan_purpose=row.loan_purpose,
        income=row.income,
        status=row.status,
        created_at=row.created_at,
        idempotency_key=row.idempotency_key,
        documents=documents or [],
    )


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    """Map SQLAlchemy exceptions onto the store's exception hierarchy."""
    try:
        yield
    except IntegrityError as e:
        raise ConstraintViolationError(f"{operation}: constraint violated: {e.orig}") from e
    except OperationalError as e:
        raise MetadataUnavailableError(f"{operation}: database unavailable: {e.orig}") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise MetadataUnavailableError(f"{operation}: connection lost") from e
        raise MetadataStoreError(f"{operation} failed: {e}") from e
    except OSError as e:
        raise MetadataUnavailableError(f"{operation}: database unavailable: {e}") from e
    except SQLAlchemyError as e:
        raise MetadataStoreError(f"{operation} failed: {e}") from e


class MetadataTransaction:
    """One open transaction scoped to a single submission.

    Obtained from MetadataStore.begin_transaction(); never constructed
    directly by callers.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._state = "open"

    @property
    def is_active(self) -> bool:
        """Whether the transaction can still accept inserts."""
        return self._state == "open"

    def _ensure_open(self) -> None:
        if self._state != "open":
            raise TransactionClosedError(f"Transaction is {self._state}")

    async def insert_application(
        self,
        *,
        application_id: uuid.UUID,
        customer_id: str,
        loan_amount: Decimal,
        loan_purpose: str,
        income: Decimal,
        idempotency_key: str | None = None,
    ) -> ApplicationRecord:
        """Insert the application row with status PENDING.

        The row is flushed immediately so constraint violations surface
        here rather than at commit.

        Returns:
            The projection the row will have once committed.

        Raises:
            ConstraintViolationError: Duplicate ID or idempotency key.
            MetadataUnavailableError: If the database cannot be reached.
        """
        self._ensure_open()
        row = LoanApplication(
            id=application_id,
            created_at=datetime.now(UTC),
            customer_id=customer_id,
            loan_amount=loan_amount,
            loan_purpose=loan_purpose,
            income=income,
            status=ApplicationStatus.PENDING,
            idempotency_key=idempotency_key,
        )
        async with _translate_errors("insert_application"):
            self._session.add(row)
            await self._session.flush()
        return _application_record(row)

    async def insert_document(
        self,
        *,
        document_id: uuid.UUID,
        application_id: uuid.UUID,
        document_type: str,
        file_name: str,
        file_size: int,
        content_type: str,
        sha256: str,
        storage_bucket: str,
        object_key: str,
    ) -> DocumentSummary:
        """Insert one document metadata row.

        Raises:
            ConstraintViolationError: Duplicate ID or unknown application.
            MetadataUnavailableError: If the database cannot be reached.
        """
        self._ensure_open()
        row = LoanDocument(
            id=document_id,
            uploaded_at=datetime.now(UTC),
            application_id=application_id,
            document_type=document_type,
            file_name=file_name,
            file_size=file_size,
            content_type=content_type,
            sha256=sha256,
            storage_bucket=storage_bucket,
            object_key=object_key,
        )
        async with _translate_errors("insert_document"):
            self._session.add(row)
            await self._session.flush()
        return _document_summary(row)

    async def commit(self) -> None:
        """Commit all inserts atomically.

        Raises:
            MetadataUnavailableError: If the database cannot be reached.
            MetadataStoreError: If the commit fails.
        """
        self._ensure_open()
        self._state = "committing"
        async with _translate_errors("commit"):
            await self._session.commit()
        self._state = "committed"

    async def rollback(self) -> None:
        """Discard all inserts. A no-op once the transaction is finished."""
        if self._state in ("committed", "rolled back"):
            return
        self._state = "rolled back"
        async with _translate_errors("rollback"):
            await self._session.rollback()

    async def _release(self) -> None:
        try:
            if self._state not in ("committed", "rolled back"):
                self._state = "rolled back"
                await self._session.rollback()
        finally:
            await self._session.close()


class MetadataStore:
    """Applications and document metadata in the relational store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory sessions are checked out from per operation.
        """
        self._session_factory = session_factory

    @asynccontextmanager
    async def begin_transaction(self) -> AsyncIterator[MetadataTransaction]:
        """Open a transaction scope.

        On exit the transaction is rolled back unless it was committed, and
        its connection is released. The release is shielded from
        cancellation of the calling task.

        Yields:
            MetadataTransaction bound to a fresh session.
        """
        session = self._session_factory()
        txn = MetadataTransaction(session)
        try:
            yield txn
        finally:
            try:
                await asyncio.shield(txn._release())
            except Exception:
                logger.exception("Failed to release metadata transaction")

    async def get_status(self, application_id: uuid.UUID) -> ApplicationStatus:
        """Get the authoritative status of an application.

        Raises:
            ApplicationNotFoundError: If no committed application has this ID.
            MetadataUnavailableError: If the database cannot be reached.
        """
        async with self._session_factory() as session, _translate_errors("get_status"):
            status = await session.scalar(
                select(LoanApplication.status).where(LoanApplication.id == application_id)
            )
        if status is None:
            raise ApplicationNotFoundError(application_id)
        return status

    async def list_documents(self, application_id: uuid.UUID) -> list[DocumentSummary]:
        """List the documents of an application in upload order.

        An unknown application yields an empty list.
        """
        query = (
            select(LoanDocument)
            .where(LoanDocument.application_id == application_id)
            .order_by(LoanDocument.uploaded_at, LoanDocument.id)
        )
        async with self._session_factory() as session, _translate_errors("list_documents"):
            rows = (await session.scalars(query)).all()
        return [_document_summary(row) for row in rows]

    async def get_application(self, application_id: uuid.UUID) -> ApplicationRecord:
        """Get the full projection of a committed application.

        Raises:
            ApplicationNotFoundError: If no committed application has this ID.
        """
        query = (
            select(LoanApplication)
            .options(selectinload(LoanApplication.documents))
            .where(LoanApplication.id == application_id)
        )
        async with self._session_factory() as session, _translate_errors("get_application"):
            row = await session.scalar(query)
            if row is None:
                raise ApplicationNotFoundError(application_id)
            return _application_record(row, [_document_summary(d) for d in row.documents])

    async def find_by_idempotency_key(self, key: str) -> ApplicationRecord | None:
        """Find the committed application submitted under an idempotency key."""
        query = (
            select(LoanApplication)
            .options(selectinload(LoanApplication.documents))
            .where(LoanApplication.idempotency_key == key)
        )
        async with self._session_factory() as session, _translate_errors(
            "find_by_idempotency_key"
        ):
            row = await session.scalar(query)
            if row is None:
                return None
            return _application_record(row, [_document_summary(d) for d in row.documents])

