"""Tests for the submission coordinator.

Tests cover:
- Successful submissions across all three stores
- Validation before any side effect
- Compensation when staging, inserting or publishing fails
- Commit failures after publish
- Client idempotency keys (replay and lost races)
- Cancellation between staging and commit
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from loanintake.core.config import SubmissionSettings
from loanintake.db.models import ApplicationStatus, LoanApplication, LoanDocument
from loanintake.services.metadata_store import (
    ApplicationRecord,
    ConstraintViolationError,
    MetadataStore,
    MetadataUnavailableError,
)
from loanintake.services.object_stager import (
    ObjectStager,
    StoreUnavailableError,
    WriteFailedError,
)
from loanintake.services.submission import (
    CoordinatorUnavailableError,
    InvalidInputError,
    NotificationFailedError,
    PersistenceFailedError,
    SubmissionCoordinator,
    SubmissionRequest,
    UploadFailedError,
)
from tests.factories import TEST_BUCKET, TEST_STREAM, create_request, create_upload, pdf_bytes


class RecordingStager(ObjectStager):
    """Stager that can fail on the Nth stage call and records discards."""

    def __init__(self, client, bucket, fail_on=None, error=None, fail_discard=False):
        super().__init__(client, bucket)
        self.calls = 0
        self.fail_on = fail_on
        self.error = error or WriteFailedError("Upload failed")
        self.fail_discard = fail_discard
        self.discarded = []

    async def stage(self, application_id, document_id, upload):
        self.calls += 1
        if self.fail_on is not None and self.calls >= self.fail_on:
            raise self.error
        return await super().stage(application_id, document_id, upload)

    async def discard(self, staged):
        self.discarded.append(staged)
        if self.fail_discard:
            raise StoreUnavailableError("Object store unreachable")
        await super().discard(staged)


def object_count(object_store) -> int:
    response = object_store._client.list_objects_v2(Bucket=TEST_BUCKET)
    return response.get("KeyCount", 0)


async def row_counts(session_factory) -> tuple[int, int]:
    async with session_factory() as session:
        applications = await session.scalar(select(func.count()).select_from(LoanApplication))
        documents = await session.scalar(select(func.count()).select_from(LoanDocument))
    return applications, documents


async def event_count(redis_factory) -> int:
    async with redis_factory() as client:
        return await client.xlen(TEST_STREAM)


def fake_store(txn, existing=None):
    """Metadata store double handing out a single transaction."""
    store = MagicMock(spec=MetadataStore)

    @asynccontextmanager
    async def begin_transaction():
        yield txn

    store.begin_transaction = begin_transaction
    store.find_by_idempotency_key = AsyncMock(return_value=existing)
    return store


def make_record(application_id=None, idempotency_key=None) -> ApplicationRecord:
    return ApplicationRecord(
        id=application_id or uuid.uuid4(),
        customer_id="c1",
        loan_amount=Decimal("10000"),
        loan_purpose="auto",
        income=Decimal("50000"),
        status=ApplicationStatus.PENDING,
        created_at=datetime.now(UTC),
        idempotency_key=idempotency_key,
    )


class TestSubmissionRequest:
    """Tests for building requests from form values."""

    def test_from_form(self):
        request = SubmissionRequest.from_form(
            customer_id="c1", loan_amount="10000", loan_purpose="auto", income="50000"
        )

        assert request.customer_id == "c1"
        assert request.loan_amount == Decimal("10000")
        assert request.income == Decimal("50000")
        assert request.idempotency_key is None

    @pytest.mark.parametrize("missing", ["customer_id", "loan_amount", "loan_purpose", "income"])
    def test_missing_field(self, missing):
        values = {
            "customer_id": "c1",
            "loan_amount": "10000",
            "loan_purpose": "auto",
            "income": "50000",
        }
        values[missing] = None

        with pytest.raises(InvalidInputError, match="Missing required fields"):
            SubmissionRequest.from_form(**values)

    def test_blank_field_is_missing(self):
        with pytest.raises(InvalidInputError, match="Missing required fields"):
            SubmissionRequest.from_form(
                customer_id="   ", loan_amount="10000", loan_purpose="auto", income="50000"
            )

    @pytest.mark.parametrize("amount", ["abc", "-5", "0", "1.234"])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidInputError, match="loanAmount"):
            SubmissionRequest.from_form(
                customer_id="c1", loan_amount=amount, loan_purpose="auto", income="50000"
            )

    def test_invalid_income(self):
        with pytest.raises(InvalidInputError, match="income"):
            SubmissionRequest.from_form(
                customer_id="c1", loan_amount="10000", loan_purpose="auto", income="lots"
            )


class TestSuccessfulSubmission:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_submit_with_one_document(
        self, coordinator, object_store, session_factory, redis_factory
    ):
        result = await coordinator.submit(
            create_request(), [create_upload(content=pdf_bytes(1024))], correlation_id="corr-1"
        )

        application = result.application
        assert application.status == ApplicationStatus.PENDING
        assert application.customer_id == "c1"
        assert application.loan_amount == Decimal("10000")
        assert result.replayed is False
        assert len(application.documents) == 1
        assert application.documents[0].file_size == 1024

        assert await row_counts(session_factory) == (1, 1)
        assert object_count(object_store) == 1
        assert await event_count(redis_factory) == 1

    @pytest.mark.asyncio
    async def test_document_handles_resolve_to_uploaded_bytes(
        self, coordinator, object_store, session_factory
    ):
        """Every committed document's storage handle points at bytes of the same size."""
        sizes = [1024, 2048, 10]
        uploads = [
            create_upload(filename=f"doc{i}.pdf", content=pdf_bytes(size))
            for i, size in enumerate(sizes)
        ]

        result = await coordinator.submit(create_request(), uploads)

        async with session_factory() as session:
            rows = (
                await session.scalars(
                    select(LoanDocument).where(
                        LoanDocument.application_id == result.application.id
                    )
                )
            ).all()
        assert len(rows) == len(sizes)
        for row in rows:
            metadata = object_store.get_metadata(row.storage_bucket, row.object_key)
            assert metadata.size_bytes == row.file_size
        assert sorted(row.file_size for row in rows) == sorted(sizes)

    @pytest.mark.asyncio
    async def test_submit_without_documents(self, coordinator, session_factory):
        result = await coordinator.submit(create_request())

        assert result.application.documents == []
        assert await row_counts(session_factory) == (1, 0)

    @pytest.mark.asyncio
    async def test_event_describes_submission(self, coordinator, redis_factory):
        result = await coordinator.submit(
            create_request(), [create_upload()], correlation_id="corr-42"
        )

        async with redis_factory() as client:
            entries = await client.xrange(TEST_STREAM)
        assert len(entries) == 1
        _, fields = entries[0]
        body = json.loads(fields[b"body"])

        assert body["eventId"] == str(result.ack.event_id)
        assert body["eventId"] != str(result.application.id)
        assert body["eventType"] == "ApplicationSubmitted"
        assert body["applicationId"] == str(result.application.id)
        assert body["correlationId"] == "corr-42"
        assert body["payload"]["loanAmount"] == 10000.0
        assert body["payload"]["documents"] == [
            {
                "documentId": str(result.application.documents[0].id),
                "documentType": "documents",
                "fileName": "statement.pdf",
            }
        ]

    @pytest.mark.asyncio
    async def test_identities_generated_up_front(self, stager, metadata_store, publisher):
        ids = [uuid.uuid4() for _ in range(4)]
        coordinator = SubmissionCoordinator(
            stager,
            metadata_store,
            publisher,
            SubmissionSettings(),
            id_factory=iter(ids).__next__,
        )

        result = await coordinator.submit(
            create_request(), [create_upload("a.pdf"), create_upload("b.pdf")]
        )

        assert result.application.id == ids[0]
        assert {doc.id for doc in result.application.documents} == {ids[1], ids[2]}
        assert result.ack.event_id == ids[3]

    @pytest.mark.asyncio
    async def test_retry_without_key_creates_new_application(self, coordinator, session_factory):
        first = await coordinator.submit(create_request(), [create_upload()])
        second = await coordinator.submit(create_request(), [create_upload()])

        assert first.application.id != second.application.id
        assert await row_counts(session_factory) == (2, 2)


class TestValidation:
    """Rejections happen before any store is touched."""

    @pytest.fixture
    def untouched(self):
        stager = MagicMock(spec=ObjectStager)
        store = MagicMock(spec=MetadataStore)
        publisher = MagicMock()
        coordinator = SubmissionCoordinator(stager, store, publisher, SubmissionSettings())
        return coordinator, stager, store, publisher

    def assert_untouched(self, stager, store, publisher):
        stager.stage.assert_not_called()
        store.begin_transaction.assert_not_called()
        publisher.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_sixth_file_rejected(self, untouched):
        coordinator, stager, store, publisher = untouched
        uploads = [create_upload(f"doc{i}.pdf") for i in range(6)]

        with pytest.raises(InvalidInputError, match="Too many documents"):
            await coordinator.submit(create_request(), uploads)

        self.assert_untouched(stager, store, publisher)

    @pytest.mark.asyncio
    async def test_exe_rejected(self, untouched):
        coordinator, stager, store, publisher = untouched
        upload = create_upload("setup.exe", content=b"MZ" * 100, content_type="application/x-msdownload")

        with pytest.raises(InvalidInputError, match="Unsupported document type"):
            await coordinator.submit(create_request(), [upload])

        self.assert_untouched(stager, store, publisher)

    @pytest.mark.asyncio
    async def test_exe_with_pdf_content_type_rejected(self, untouched):
        coordinator, stager, store, publisher = untouched
        upload = create_upload("setup.exe", content_type="application/pdf")

        with pytest.raises(InvalidInputError):
            await coordinator.submit(create_request(), [upload])

        self.assert_untouched(stager, store, publisher)

    @pytest.mark.asyncio
    async def test_empty_file_rejected(self, untouched):
        coordinator, stager, store, publisher = untouched

        with pytest.raises(InvalidInputError, match="empty"):
            await coordinator.submit(create_request(), [create_upload(content=b"")])

        self.assert_untouched(stager, store, publisher)

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self):
        stager = MagicMock(spec=ObjectStager)
        coordinator = SubmissionCoordinator(
            stager,
            MagicMock(spec=MetadataStore),
            MagicMock(),
            SubmissionSettings(max_file_size_bytes=1000),
        )

        with pytest.raises(InvalidInputError, match="maximum size"):
            await coordinator.submit(create_request(), [create_upload(content=pdf_bytes(1001))])

        stager.stage.assert_not_called()

    @pytest.mark.asyncio
    async def test_size_measured_when_not_declared(self):
        stager = MagicMock(spec=ObjectStager)
        coordinator = SubmissionCoordinator(
            stager,
            MagicMock(spec=MetadataStore),
            MagicMock(),
            SubmissionSettings(max_file_size_bytes=1000),
        )
        upload = create_upload(content=pdf_bytes(2000), declare_size=False)

        with pytest.raises(InvalidInputError, match="maximum size"):
            await coordinator.submit(create_request(), [upload])

        assert upload.stream.tell() == 0

    @pytest.mark.asyncio
    async def test_content_type_parameters_ignored(self, coordinator):
        upload = create_upload(content_type="application/pdf; charset=binary")

        result = await coordinator.submit(create_request(), [upload])

        assert len(result.application.documents) == 1


class TestStagingFailure:
    """Compensation when the object stager fails."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_on,total", [(1, 1), (2, 3), (3, 3), (5, 5)])
    async def test_nth_failure_compensates_previous(
        self,
        object_store,
        metadata_store,
        publisher,
        session_factory,
        redis_factory,
        fail_on,
        total,
    ):
        stager = RecordingStager(object_store, TEST_BUCKET, fail_on=fail_on)
        coordinator = SubmissionCoordinator(
            stager, metadata_store, publisher, SubmissionSettings(staging_concurrency=1)
        )
        uploads = [create_upload(f"doc{i}.pdf") for i in range(total)]

        with pytest.raises(UploadFailedError) as exc_info:
            await coordinator.submit(create_request(), uploads)

        assert exc_info.value.stage == "stage_documents"
        assert len(stager.discarded) == fail_on - 1
        assert object_count(object_store) == 0
        assert await row_counts(session_factory) == (0, 0)
        assert await event_count(redis_factory) == 0

    @pytest.mark.asyncio
    async def test_concurrent_staging_failure_compensates_all_written(
        self, object_store, metadata_store, publisher, session_factory
    ):
        stager = RecordingStager(object_store, TEST_BUCKET, fail_on=4)
        coordinator = SubmissionCoordinator(stager, metadata_store, publisher, SubmissionSettings())
        uploads = [create_upload(f"doc{i}.pdf") for i in range(5)]

        with pytest.raises(UploadFailedError):
            await coordinator.submit(create_request(), uploads)

        assert object_count(object_store) == 0
        assert await row_counts(session_factory) == (0, 0)

    @pytest.mark.asyncio
    async def test_store_unavailable(
        self, object_store, metadata_store, publisher, session_factory, redis_factory
    ):
        stager = RecordingStager(
            object_store,
            TEST_BUCKET,
            fail_on=1,
            error=StoreUnavailableError("Object store unreachable"),
        )
        coordinator = SubmissionCoordinator(stager, metadata_store, publisher, SubmissionSettings())

        with pytest.raises(UploadFailedError):
            await coordinator.submit(create_request(), [create_upload()])

        assert await row_counts(session_factory) == (0, 0)
        assert await event_count(redis_factory) == 0

    @pytest.mark.asyncio
    async def test_compensation_failure_does_not_mask_error(
        self, object_store, metadata_store, publisher
    ):
        stager = RecordingStager(object_store, TEST_BUCKET, fail_on=2, fail_discard=True)
        coordinator = SubmissionCoordinator(
            stager, metadata_store, publisher, SubmissionSettings(staging_concurrency=1)
        )

        with pytest.raises(UploadFailedError):
            await coordinator.submit(create_request(), [create_upload("a.pdf"), create_upload("b.pdf")])

        # The orphan is left behind; the caller still sees the staging error
        assert len(stager.discarded) == 1
        assert object_count(object_store) == 1


class TestPersistenceFailure:
    """Compensation when metadata cannot be inserted."""

    @pytest.mark.asyncio
    async def test_insert_failure_compensates(
        self, stager, metadata_store, publisher, object_store, redis_factory
    ):
        existing = await SubmissionCoordinator(
            stager, metadata_store, publisher, SubmissionSettings()
        ).submit(create_request())
        ids = iter([existing.application.id, uuid.uuid4(), uuid.uuid4()])
        coordinator = SubmissionCoordinator(
            stager, metadata_store, publisher, SubmissionSettings(), id_factory=ids.__next__
        )

        with pytest.raises(PersistenceFailedError) as exc_info:
            await coordinator.submit(create_request(), [create_upload()])

        assert exc_info.value.stage == "insert_metadata"
        assert object_count(object_store) == 0
        # Only the first submission's event exists
        assert await event_count(redis_factory) == 1

    @pytest.mark.asyncio
    async def test_commit_outcome_unknown_leaves_objects(self, object_store):
        """A commit that may have landed does not delete staged objects."""
        txn = AsyncMock()
        txn.insert_application.return_value = make_record()
        txn.commit.side_effect = MetadataUnavailableError("commit: database unavailable")
        stager = RecordingStager(object_store, TEST_BUCKET)
        publisher = AsyncMock()
        coordinator = SubmissionCoordinator(
            stager, fake_store(txn), publisher, SubmissionSettings()
        )

        with pytest.raises(PersistenceFailedError) as exc_info:
            await coordinator.submit(create_request(), [create_upload()])

        assert exc_info.value.stage == "commit"
        publisher.publish.assert_awaited_once()
        assert stager.discarded == []
        assert object_count(object_store) == 1

    @pytest.mark.asyncio
    async def test_commit_rolled_back_compensates(self, object_store):
        """A commit rejected by the database deletes staged objects."""
        txn = AsyncMock()
        txn.insert_application.return_value = make_record()
        txn.commit.side_effect = ConstraintViolationError("commit: duplicate key")
        stager = RecordingStager(object_store, TEST_BUCKET)
        publisher = AsyncMock()
        coordinator = SubmissionCoordinator(
            stager, fake_store(txn), publisher, SubmissionSettings()
        )

        with pytest.raises(PersistenceFailedError) as exc_info:
            await coordinator.submit(create_request(), [create_upload(), create_upload("b.pdf")])

        assert exc_info.value.stage == "commit"
        publisher.publish.assert_awaited_once()
        assert len(stager.discarded) == 2
        assert object_count(object_store) == 0


class TestNotificationFailure:
    """Rollback and compensation when the event cannot be published."""

    @pytest.mark.asyncio
    async def test_publish_failure_rolls_back(
        self, coordinator, redis_server, object_store, metadata_store, session_factory
    ):
        redis_server.connected = False

        with pytest.raises(NotificationFailedError) as exc_info:
            await coordinator.submit(create_request(), [create_upload()])

        application_id = exc_info.value.application_id
        assert application_id is not None
        assert await metadata_store.list_documents(application_id) == []
        assert await row_counts(session_factory) == (0, 0)
        assert object_count(object_store) == 0

    @pytest.mark.asyncio
    async def test_publish_failure_calls_rollback(self, object_store):
        from loanintake.services.event_publisher import PublishTimeoutError

        txn = AsyncMock()
        txn.insert_application.return_value = make_record()
        publisher = AsyncMock()
        publisher.publish.side_effect = PublishTimeoutError("not acknowledged")
        coordinator = SubmissionCoordinator(
            RecordingStager(object_store, TEST_BUCKET),
            fake_store(txn),
            publisher,
            SubmissionSettings(),
        )

        with pytest.raises(NotificationFailedError):
            await coordinator.submit(create_request(), [create_upload()])

        txn.rollback.assert_awaited_once()
        txn.commit.assert_not_called()


class TestIdempotency:
    """Client-supplied idempotency keys."""

    @pytest.mark.asyncio
    async def test_repeat_returns_original(
        self, coordinator, object_store, session_factory, redis_factory
    ):
        first = await coordinator.submit(
            create_request(idempotency_key="retry-1"), [create_upload()]
        )
        second = await coordinator.submit(
            create_request(idempotency_key="retry-1"), [create_upload()]
        )

        assert second.replayed is True
        assert second.application.id == first.application.id
        assert len(second.application.documents) == 1
        assert await row_counts(session_factory) == (1, 1)
        assert object_count(object_store) == 1
        assert await event_count(redis_factory) == 1

    @pytest.mark.asyncio
    async def test_different_keys_create_separate_applications(self, coordinator, session_factory):
        await coordinator.submit(create_request(idempotency_key="a"))
        await coordinator.submit(create_request(idempotency_key="b"))

        assert await row_counts(session_factory) == (2, 0)

    @pytest.mark.asyncio
    async def test_lost_race_returns_winner(self, object_store):
        winner = make_record(idempotency_key="retry-1")
        txn = AsyncMock()
        txn.insert_application.side_effect = ConstraintViolationError("duplicate key")
        store = fake_store(txn)
        store.find_by_idempotency_key = AsyncMock(side_effect=[None, winner])
        stager = RecordingStager(object_store, TEST_BUCKET)
        publisher = AsyncMock()
        coordinator = SubmissionCoordinator(stager, store, publisher, SubmissionSettings())

        result = await coordinator.submit(
            create_request(idempotency_key="retry-1"), [create_upload()]
        )

        assert result.replayed is True
        assert result.application is winner
        assert len(stager.discarded) == 1
        assert object_count(object_store) == 0
        publisher.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_lookup_unavailable(self, object_store):
        store = fake_store(AsyncMock())
        store.find_by_idempotency_key = AsyncMock(
            side_effect=MetadataUnavailableError("database unavailable")
        )
        stager = RecordingStager(object_store, TEST_BUCKET)
        coordinator = SubmissionCoordinator(stager, store, AsyncMock(), SubmissionSettings())

        with pytest.raises(CoordinatorUnavailableError):
            await coordinator.submit(create_request(idempotency_key="k"), [create_upload()])

        assert stager.calls == 0


class TestCancellation:
    """Cancellation between staging and commit still compensates."""

    @pytest.mark.asyncio
    async def test_cancel_during_publish(
        self, stager, metadata_store, object_store, session_factory
    ):
        publish_started = asyncio.Event()

        class BlockingPublisher:
            async def publish(self, event):
                publish_started.set()
                await asyncio.Event().wait()

        coordinator = SubmissionCoordinator(
            stager, metadata_store, BlockingPublisher(), SubmissionSettings()
        )
        task = asyncio.create_task(
            coordinator.submit(create_request(), [create_upload("a.pdf"), create_upload("b.pdf")])
        )
        await asyncio.wait_for(publish_started.wait(), timeout=5)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert object_count(object_store) == 0
        assert await row_counts(session_factory) == (0, 0)

    @pytest.mark.asyncio
    async def test_cancel_during_staging_waits_for_in_flight_writes(
        self, object_store, metadata_store, publisher
    ):
        gate = asyncio.Event()
        second_started = asyncio.Event()

        class SlowStager(RecordingStager):
            async def stage(self, application_id, document_id, upload):
                if upload.filename == "b.pdf":
                    second_started.set()
                    await gate.wait()
                return await super().stage(application_id, document_id, upload)

        stager = SlowStager(object_store, TEST_BUCKET)
        coordinator = SubmissionCoordinator(stager, metadata_store, publisher, SubmissionSettings())
        task = asyncio.create_task(
            coordinator.submit(create_request(), [create_upload("a.pdf"), create_upload("b.pdf")])
        )
        await asyncio.wait_for(second_started.wait(), timeout=5)

        task.cancel()
        await asyncio.sleep(0)
        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert object_count(object_store) == 0
        assert len(stager.discarded) == 2
