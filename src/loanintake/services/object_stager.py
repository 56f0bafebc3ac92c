"""Object stager: writes document bytes to the object store ahead of metadata.

Every document is written under a key scoped by its application ID and a
freshly generated document ID:

    applications/{application_id}/{document_id}-{sanitized filename}

so a retried submission can never collide with the objects of an earlier
partial attempt. Keys are never overwritten.

The underlying boto3 client is synchronous; staging runs it in a worker
thread so concurrent submissions do not block the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO

from loanintake.services.storage import (
    BucketNotFoundError,
    StorageError,
    StorageUnavailableError,
)

if TYPE_CHECKING:
    import uuid

    from loanintake.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_FILENAME_LENGTH = 200


class StagingError(Exception):
    """Base exception for staging operations."""

    pass


class StoreUnavailableError(StagingError):
    """Raised when the object store cannot be reached."""

    pass


class WriteFailedError(StagingError):
    """Raised when the object store rejects or fails a write."""

    pass


@dataclass
class DocumentUpload:
    """A document received with a submission, not yet staged.

    Attributes:
        field_name: Form field the file arrived under; becomes the document type.
        filename: Filename as supplied by the client.
        content_type: MIME type declared by the client.
        size: Byte size, when known before reading the stream.
        stream: Readable binary stream of the document content.
    """

    field_name: str
    filename: str
    content_type: str
    size: int | None
    stream: BinaryIO


@dataclass(frozen=True)
class StagedDocument:
    """A document whose bytes are durably present in the object store."""

    document_id: uuid.UUID
    document_type: str
    file_name: str
    bucket: str
    object_key: str
    size: int
    content_type: str
    sha256: str


def sanitize_filename(filename: str) -> str:
    """Reduce a client-supplied filename to a safe object key component.

    Directory parts are dropped (both separators), unsafe characters are
    replaced and leading dots removed.

    Args:
        filename: Raw filename from the upload.

    Returns:
        A non-empty filename safe to embed in an object key.
    """
    base = re.split(r"[\\/]", filename or "")[-1]
    base = _UNSAFE_FILENAME_CHARS.sub("_", base).lstrip(".")
    if len(base) > _MAX_FILENAME_LENGTH:
        # Keep the extension when truncating
        stem, dot, ext = base.rpartition(".")
        if dot and len(ext) < 16:
            base = stem[: _MAX_FILENAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            base = base[:_MAX_FILENAME_LENGTH]
    return base or "document"


def build_object_key(application_id: uuid.UUID, document_id: uuid.UUID, filename: str) -> str:
    """Build the object key a document is staged under."""
    return f"applications/{application_id}/{document_id}-{sanitize_filename(filename)}"


class ObjectStager:
    """Stages submission documents in a single bucket."""

    def __init__(self, client: ObjectStoreClient, bucket: str) -> None:
        """Initialize the stager.

        Args:
            client: Object store client shared by all requests.
            bucket: Bucket documents are written to.
        """
        self._client = client
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    async def stage(
        self,
        application_id: uuid.UUID,
        document_id: uuid.UUID,
        upload: DocumentUpload,
    ) -> StagedDocument:
        """Stream one document into the object store.

        Args:
            application_id: Owning application.
            document_id: Identity generated for this document.
            upload: The document to write.

        Returns:
            StagedDocument describing the bytes now readable under its key.

        Raises:
            StoreUnavailableError: If the object store cannot be reached.
            WriteFailedError: If the write fails or the key already exists.
        """
        key = build_object_key(application_id, document_id, upload.filename)

        try:
            result = await asyncio.to_thread(
                self._client.upload_stream,
                self._bucket,
                key,
                upload.stream,
                content_type=upload.content_type,
                metadata={
                    "application-id": str(application_id),
                    "document-id": str(document_id),
                },
            )
        except (StorageUnavailableError, BucketNotFoundError) as e:
            raise StoreUnavailableError(e.message) from e
        except StorageError as e:
            raise WriteFailedError(e.message) from e
        except OSError as e:
            raise WriteFailedError(f"Failed to read upload stream: {e}") from e

        logger.info(
            "Staged document %s for application %s",
            document_id,
            application_id,
            extra={
                "application_id": str(application_id),
                "document_id": str(document_id),
                "object_key": key,
                "size_bytes": result.size_bytes,
            },
        )

        return StagedDocument(
            document_id=document_id,
            document_type=upload.field_name,
            file_name=upload.filename,
            bucket=result.bucket,
            object_key=result.key,
            size=result.size_bytes,
            content_type=result.content_type,
            sha256=result.sha256_digest,
        )

    async def discard(self, staged: StagedDocument) -> None:
        """Delete a staged document (compensation).

        Deleting an already-missing object succeeds.

        Raises:
            StoreUnavailableError: If the object store cannot be reached.
            WriteFailedError: If the delete fails.
        """
        try:
            await asyncio.to_thread(self._client.delete, staged.bucket, staged.object_key)
        except StorageUnavailableError as e:
            raise StoreUnavailableError(e.message) from e
        except StorageError as e:
            raise WriteFailedError(e.message) from e

        logger.info(
            "Discarded staged document %s",
            staged.document_id,
            extra={"document_id": str(staged.document_id), "object_key": staged.object_key},
        )
