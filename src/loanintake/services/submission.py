"""Submission coordinator: one logical "submit application" across three stores.

The relational store, the object store and the event log share no
transaction, so a submission is an ordered protocol with compensation:

1. Validate the request and its documents (no side effects on failure).
2. Generate every identity up front: application, documents, event.
3. Stage document bytes in the object store.
4. Open a metadata transaction; insert the application and document rows.
5. Publish the SubmissionEvent, still inside the open transaction.
6. Commit.

A failure in steps 3-5 deletes every object staged by this attempt and
rolls the transaction back; the original error is what the caller sees,
even when compensation itself fails. Once the event is published the
commit outcome decides, and staged objects are left in place.

Cancellation of the calling task between staging and commit still runs
rollback and compensation before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from loanintake.core.logging import get_correlation_id
from loanintake.services.event_publisher import DocumentRef, EventPublishError, SubmissionEvent
from loanintake.services.metadata_store import (
    ConstraintViolationError,
    MetadataStoreError,
    MetadataUnavailableError,
)
from loanintake.services.object_stager import StagingError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from loanintake.core.config import SubmissionSettings
    from loanintake.services.event_publisher import EventPublisher, PublishAck
    from loanintake.services.metadata_store import (
        ApplicationRecord,
        MetadataStore,
        MetadataTransaction,
    )
    from loanintake.services.object_stager import DocumentUpload, ObjectStager, StagedDocument

logger = logging.getLogger(__name__)

# Shown to clients for every mid-pipeline failure; detail goes to the log only
GENERIC_SUBMISSION_ERROR = "Internal server error during application submission."

_FIELD_LABELS = {
    "customer_id": "customerId",
    "loan_amount": "loanAmount",
    "loan_purpose": "loanPurpose",
    "income": "income",
    "idempotency_key": "Idempotency-Key",
}


class SubmissionError(Exception):
    """Base exception for submission failures.

    Attributes:
        message: Description of the failure (internal detail for 5xx errors).
        stage: Protocol stage that failed.
        application_id: Application the attempt was creating, if generated.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        application_id: uuid.UUID | None = None,
    ) -> None:
        self.message = message
        self.stage = stage
        self.application_id = application_id
        super().__init__(message)


class InvalidInputError(SubmissionError):
    """Raised when the request is rejected before any side effect."""

    pass


class UploadFailedError(SubmissionError):
    """Raised when a document could not be staged."""

    pass


class PersistenceFailedError(SubmissionError):
    """Raised when metadata could not be inserted or committed."""

    pass


class NotificationFailedError(SubmissionError):
    """Raised when the submission event could not be published."""

    pass


class CoordinatorUnavailableError(SubmissionError):
    """Raised when a backing store is unreachable before any side effect."""

    pass


class SubmissionRequest(BaseModel):
    """Structured fields of a loan application submission."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    customer_id: str = Field(min_length=1, max_length=255)
    loan_amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    loan_purpose: str = Field(min_length=1, max_length=255)
    income: Decimal = Field(ge=0, max_digits=14, decimal_places=2)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)

    @classmethod
    def from_form(
        cls,
        *,
        customer_id: str | None,
        loan_amount: str | None,
        loan_purpose: str | None,
        income: str | None,
        idempotency_key: str | None = None,
    ) -> SubmissionRequest:
        """Build a request from raw form values.

        Raises:
            InvalidInputError: If a field is missing or malformed.
        """
        values = {
            "customer_id": customer_id,
            "loan_amount": loan_amount,
            "loan_purpose": loan_purpose,
            "income": income,
        }
        if any(value is None or not str(value).strip() for value in values.values()):
            raise InvalidInputError("Missing required fields.", stage="validate")

        try:
            return cls(**values, idempotency_key=idempotency_key)
        except ValidationError as e:
            error = e.errors()[0]
            name = str(error["loc"][0]) if error["loc"] else ""
            label = _FIELD_LABELS.get(name, name)
            raise InvalidInputError(
                f"Invalid value for {label}: {error['msg']}.", stage="validate"
            ) from e


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of a successful submission.

    Attributes:
        application: The committed application with its documents.
        ack: Event log acknowledgement (None for a replayed submission).
        replayed: True when an earlier submission with the same
            idempotency key was returned instead of creating a new one.
    """

    application: ApplicationRecord
    ack: PublishAck | None = None
    replayed: bool = False


def _measure(upload: DocumentUpload) -> int | None:
    """Byte size of an upload, measured from the stream when not declared."""
    if upload.size is not None:
        return upload.size
    stream = upload.stream
    if not stream.seekable():
        return None
    position = stream.tell()
    end = stream.seek(0, os.SEEK_END)
    stream.seek(position)
    return end - position


class SubmissionCoordinator:
    """Executes the multi-store submission protocol."""

    def __init__(
        self,
        stager: ObjectStager,
        store: MetadataStore,
        publisher: EventPublisher,
        limits: SubmissionSettings,
        *,
        id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ) -> None:
        """Initialize the coordinator.

        Args:
            stager: Object stager for document bytes.
            store: Metadata store for application and document rows.
            publisher: Event publisher for SubmissionEvents.
            limits: Document count, size and type limits.
            id_factory: Generator of application, document and event IDs.
        """
        self._stager = stager
        self._store = store
        self._publisher = publisher
        self._limits = limits
        self._new_id = id_factory

    def validate_documents(self, documents: Sequence[DocumentUpload]) -> None:
        """Check document count, type and size limits.

        Raises:
            InvalidInputError: On the first violated limit.
        """
        limits = self._limits
        if len(documents) > limits.max_files:
            raise InvalidInputError(
                f"Too many documents: at most {limits.max_files} files are allowed.",
                stage="validate",
            )

        allowed_types = {t.lower() for t in limits.allowed_content_types}
        for upload in documents:
            extension = os.path.splitext(upload.filename or "")[1].lower()
            content_type = (upload.content_type or "").split(";")[0].strip().lower()
            if content_type not in allowed_types or extension not in limits.allowed_extensions:
                raise InvalidInputError(
                    f"Unsupported document type for '{upload.filename}'. "
                    f"Allowed types: {', '.join(limits.allowed_content_types)}.",
                    stage="validate",
                )

            size = _measure(upload)
            if size is None:
                raise InvalidInputError(
                    f"Size of document '{upload.filename}' could not be determined.",
                    stage="validate",
                )
            if size == 0:
                raise InvalidInputError(
                    f"Document '{upload.filename}' is empty.", stage="validate"
                )
            if size > limits.max_file_size_bytes:
                raise InvalidInputError(
                    f"Document '{upload.filename}' exceeds the maximum size of "
                    f"{limits.max_file_size_bytes} bytes.",
                    stage="validate",
                )

    async def submit(
        self,
        request: SubmissionRequest,
        documents: Sequence[DocumentUpload] = (),
        *,
        correlation_id: str | None = None,
    ) -> SubmissionResult:
        """Submit one loan application.

        Args:
            request: Validated structured fields.
            documents: Documents to stage, in submission order.
            correlation_id: Request correlation ID (defaults to the current one).

        Returns:
            SubmissionResult with the committed application.

        Raises:
            InvalidInputError: Rejected before any side effect.
            UploadFailedError: Staging failed; staged objects were deleted.
            PersistenceFailedError: Insert or commit failed.
            NotificationFailedError: Publish failed; rolled back and compensated.
            CoordinatorUnavailableError: Idempotency lookup could not reach the store.
        """
        correlation_id = correlation_id or get_correlation_id()
        self.validate_documents(documents)

        if request.idempotency_key:
            existing = await self._find_existing(request.idempotency_key)
            if existing is not None:
                logger.info(
                    "Replaying submission %s for idempotency key",
                    existing.id,
                    extra={"application_id": str(existing.id)},
                )
                return SubmissionResult(application=existing, replayed=True)

        application_id = self._new_id()
        pairs = [(self._new_id(), upload) for upload in documents]
        event_id = self._new_id()
        log_extra = {"application_id": str(application_id), "correlation_id": correlation_id or "-"}

        logger.info(
            "Submitting application %s with %d document(s)",
            application_id,
            len(pairs),
            extra=log_extra,
        )

        staged = await self._stage_documents(application_id, pairs, log_extra)

        compensate = True
        try:
            async with self._store.begin_transaction() as txn:
                record = await self._insert_metadata(txn, application_id, request, staged, log_extra)

                event = SubmissionEvent(
                    event_id=event_id,
                    application_id=application_id,
                    customer_id=request.customer_id,
                    loan_amount=request.loan_amount,
                    loan_purpose=request.loan_purpose,
                    income=request.income,
                    correlation_id=correlation_id,
                    documents=tuple(
                        DocumentRef(doc.document_id, doc.document_type, doc.file_name)
                        for doc in staged
                    ),
                )
                ack = await self._publish(txn, event, log_extra)

                # Published: from here the commit outcome decides
                compensate = False
                await self._commit(txn, event, staged, log_extra)

        except PersistenceFailedError as e:
            if compensate:
                await self._compensate(staged, log_extra)
            if request.idempotency_key and isinstance(e.__cause__, ConstraintViolationError):
                try:
                    winner = await self._find_existing(request.idempotency_key)
                except CoordinatorUnavailableError:
                    winner = None
                if winner is not None:
                    logger.info(
                        "Lost idempotency race to application %s",
                        winner.id,
                        extra=log_extra,
                    )
                    return SubmissionResult(application=winner, replayed=True)
            raise
        except BaseException:
            if compensate:
                await self._compensate(staged, log_extra)
            raise

        logger.info(
            "Application %s committed",
            application_id,
            extra={**log_extra, "event_id": str(event_id)},
        )
        return SubmissionResult(application=record, ack=ack)

    async def _find_existing(self, idempotency_key: str) -> ApplicationRecord | None:
        try:
            return await self._store.find_by_idempotency_key(idempotency_key)
        except MetadataStoreError as e:
            logger.error("Idempotency lookup failed: %s", e, extra={"stage": "idempotency"})
            raise CoordinatorUnavailableError(
                f"Idempotency lookup failed: {e}", stage="idempotency"
            ) from e

    async def _stage_documents(
        self,
        application_id: uuid.UUID,
        pairs: list[tuple[uuid.UUID, DocumentUpload]],
        log_extra: dict[str, str],
    ) -> list[StagedDocument]:
        """Stage every document with bounded concurrency.

        After the first failure no further document is started; writes
        already in flight are allowed to finish so they can be compensated.
        """
        if not pairs:
            return []

        semaphore = asyncio.Semaphore(self._limits.staging_concurrency)
        aborted = asyncio.Event()

        async def stage_one(document_id: uuid.UUID, upload: DocumentUpload) -> StagedDocument | None:
            async with semaphore:
                if aborted.is_set():
                    return None
                return await self._stager.stage(application_id, document_id, upload)

        tasks = [asyncio.create_task(stage_one(doc_id, upload)) for doc_id, upload in pairs]
        try:
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            if pending:
                aborted.set()
                await asyncio.wait(pending)
        except asyncio.CancelledError:
            aborted.set()
            await asyncio.shield(asyncio.wait(tasks))
            await self._compensate(_completed(tasks), log_extra)
            raise

        staged = _completed(tasks)
        failures = [t.exception() for t in tasks if t.exception() is not None]
        if not failures:
            return staged

        error = failures[0]
        logger.error(
            "Staging failed for application %s: %s",
            application_id,
            error,
            extra={**log_extra, "stage": "stage_documents"},
        )
        await self._compensate(staged, log_extra)
        detail = str(error) if isinstance(error, StagingError) else repr(error)
        raise UploadFailedError(
            f"Document staging failed: {detail}",
            stage="stage_documents",
            application_id=application_id,
        ) from error

    async def _insert_metadata(
        self,
        txn: MetadataTransaction,
        application_id: uuid.UUID,
        request: SubmissionRequest,
        staged: list[StagedDocument],
        log_extra: dict[str, str],
    ) -> ApplicationRecord:
        try:
            record = await txn.insert_application(
                application_id=application_id,
                customer_id=request.customer_id,
                loan_amount=request.loan_amount,
                loan_purpose=request.loan_purpose,
                income=request.income,
                idempotency_key=request.idempotency_key,
            )
            summaries = [
                await txn.insert_document(
                    document_id=doc.document_id,
                    application_id=application_id,
                    document_type=doc.document_type,
                    file_name=doc.file_name,
                    file_size=doc.size,
                    content_type=doc.content_type,
                    sha256=doc.sha256,
                    storage_bucket=doc.bucket,
                    object_key=doc.object_key,
                )
                for doc in staged
            ]
        except MetadataStoreError as e:
            logger.error(
                "Metadata insert failed for application %s: %s",
                application_id,
                e,
                extra={**log_extra, "stage": "insert_metadata"},
            )
            await self._rollback(txn, log_extra)
            raise PersistenceFailedError(
                f"Metadata insert failed: {e}",
                stage="insert_metadata",
                application_id=application_id,
            ) from e
        return replace(record, documents=summaries)

    async def _publish(
        self,
        txn: MetadataTransaction,
        event: SubmissionEvent,
        log_extra: dict[str, str],
    ) -> PublishAck:
        try:
            return await self._publisher.publish(event)
        except EventPublishError as e:
            logger.error(
                "Publishing event %s failed: %s",
                event.event_id,
                e,
                extra={**log_extra, "stage": "publish"},
            )
            await self._rollback(txn, log_extra)
            raise NotificationFailedError(
                f"Event publish failed: {e}",
                stage="publish",
                application_id=event.application_id,
            ) from e

    async def _commit(
        self,
        txn: MetadataTransaction,
        event: SubmissionEvent,
        staged: list[StagedDocument],
        log_extra: dict[str, str],
    ) -> None:
        # The commit is shielded so a cancelled request cannot interrupt it
        # halfway; the session is only released once it has settled.
        commit = asyncio.ensure_future(txn.commit())
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            await asyncio.wait([commit])
            if not commit.cancelled() and commit.exception() is not None:
                logger.error(
                    "Commit failed after cancellation: %s",
                    commit.exception(),
                    extra={**log_extra, "stage": "commit"},
                )
            raise
        except MetadataStoreError as e:
            logger.error(
                "Commit failed after event %s was published; outcome %s: %s",
                event.event_id,
                "unknown" if isinstance(e, MetadataUnavailableError) else "rolled back",
                e,
                extra={**log_extra, "stage": "commit", "event_id": str(event.event_id)},
            )
            # Objects stay only when the commit may have landed
            if not isinstance(e, MetadataUnavailableError):
                await self._compensate(staged, log_extra)
            raise PersistenceFailedError(
                f"Metadata commit failed: {e}",
                stage="commit",
                application_id=event.application_id,
            ) from e

    async def _rollback(self, txn: MetadataTransaction, log_extra: dict[str, str]) -> None:
        try:
            await txn.rollback()
        except MetadataStoreError as e:
            logger.error(
                "Rollback failed: %s", e, extra={**log_extra, "stage": "rollback"}
            )

    async def _compensate(self, staged: list[StagedDocument], log_extra: dict[str, str]) -> None:
        """Best-effort delete of staged objects; failures are logged only."""
        if not staged:
            return
        await asyncio.shield(self._discard_all(staged, log_extra))

    async def _discard_all(self, staged: list[StagedDocument], log_extra: dict[str, str]) -> None:
        results = await asyncio.gather(
            *(self._stager.discard(doc) for doc in staged),
            return_exceptions=True,
        )
        for doc, result in zip(staged, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Compensation failed, object orphaned: %s/%s: %s",
                    doc.bucket,
                    doc.object_key,
                    result,
                    extra={**log_extra, "stage": "compensate", "object_key": doc.object_key},
                )
        logger.info(
            "Compensated %d staged document(s)",
            len(staged),
            extra={**log_extra, "stage": "compensate"},
        )


def _completed(tasks: list[asyncio.Task[StagedDocument | None]]) -> list[StagedDocument]:
    """Results of staging tasks that wrote an object, in submission order."""
    staged = []
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is None:
            result = task.result()
            if result is not None:
                staged.append(result)
    return staged
