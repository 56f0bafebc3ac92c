"""Object store integration for loan application documents.

This module provides an S3-compatible client wrapper used to stage
document bytes. Uploads are streamed from a file-like object; the SHA-256
digest and byte count are computed while the bytes flow to the store, so
a document is never held in memory as a whole.

Example:
    from loanintake.services.storage import ObjectStoreClient
    from loanintake.core.settings import get_settings

    settings = get_settings()
    client = ObjectStoreClient.from_settings(settings.s3)

    with open("statement.pdf", "rb") as fh:
        result = client.upload_stream(
            bucket=settings.s3.bucket,
            key="applications/123/456-statement.pdf",
            stream=fh,
            content_type="application/pdf",
        )
    print(f"Stored {result.size_bytes} bytes, sha256={result.sha256_digest}")
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from mypy_boto3_s3 import S3Client

    from loanintake.core.config import S3Settings

logger = logging.getLogger(__name__)

# Transport-level failures: the store could not be reached at all
_UNAVAILABLE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


@dataclass(frozen=True)
class UploadResult:
    """Result of an upload operation.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        sha256_digest: SHA-256 hex digest of the uploaded content.
        size_bytes: Size of the uploaded content in bytes.
        content_type: MIME type recorded on the object.
    """

    key: str
    bucket: str
    sha256_digest: str
    size_bytes: int
    content_type: str


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata for a stored object.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        size_bytes: Size of the object in bytes.
        content_type: MIME type of the content.
        etag: S3 ETag.
        last_modified: Last modification timestamp as ISO string.
        custom_metadata: User-defined metadata.
    """

    key: str
    bucket: str
    size_bytes: int
    content_type: str
    etag: str
    last_modified: str
    custom_metadata: dict[str, str] | None = None


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class StorageUnavailableError(StorageError):
    """Raised when the object store cannot be reached."""


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class ObjectExistsError(StorageError):
    """Raised when an upload would overwrite an existing object."""


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class _DigestingReader:
    """File-like wrapper hashing and counting bytes as they are read."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._hash = hashlib.sha256()
        self.size_bytes = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        self._hash.update(chunk)
        self.size_bytes += len(chunk)
        return chunk

    @property
    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def _error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return response.get("Error", {}).get("Code", "")


@contextmanager
def _s3_call(
    operation: str,
    *,
    bucket: str | None = None,
    key: str | None = None,
    not_found: type[StorageError] = StorageError,
) -> Iterator[None]:
    """Translate botocore and transfer failures of one S3 call.

    A missing object (HTTP 404 / NoSuchKey) raises ``not_found``; callers
    pass ObjectNotFoundError or BucketNotFoundError depending on what the
    call addresses.
    """
    context = {"bucket": bucket, "key": key, "operation": operation}
    try:
        yield
    except _UNAVAILABLE_ERRORS as e:
        raise StorageUnavailableError(f"Object store unreachable: {e}", **context) from e
    except (ClientError, S3UploadFailedError) as e:
        code = _error_code(e)
        if code == "NoSuchBucket" or "NoSuchBucket" in str(e):
            raise BucketNotFoundError(f"Bucket does not exist: {bucket}", **context) from e
        if code in ("404", "NoSuchKey"):
            target = f"{bucket}/{key}" if key else bucket
            raise not_found(f"Not found: {target}", **context) from e
        raise StorageError(f"{operation} failed: {e}", **context) from e


def _object_metadata(bucket: str, key: str, response: dict[str, Any], size: int) -> ObjectMetadata:
    last_modified = response.get("LastModified")
    return ObjectMetadata(
        key=key,
        bucket=bucket,
        size_bytes=size,
        content_type=response.get("ContentType", "application/octet-stream"),
        etag=response.get("ETag", ""),
        last_modified=last_modified.isoformat() if last_modified else "",
        custom_metadata=response.get("Metadata"),
    )


class ObjectStoreClient:
    """S3-compatible client for document bytes.

    Wraps a synchronous boto3 client; async callers run its methods in a
    worker thread. The boto3 client is thread-safe and pools its own HTTP
    connections, so one instance serves every request of the process.
    """

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
        max_pool_connections: int = 20,
        multipart_threshold: int = 8 * 1024 * 1024,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint_url: S3-compatible endpoint (None for AWS itself).
            access_key: Access key ID.
            secret_key: Secret access key.
            region: Region name; MinIO accepts us-east-1.
            connect_timeout: Seconds to wait for a connection.
            read_timeout: Seconds to wait for a response.
            max_retries: Attempts for retryable failures.
            max_pool_connections: HTTP connection pool size.
            multipart_threshold: Payload size above which uploads go multipart.
        """
        self._endpoint_url = endpoint_url
        self._region = region
        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": max_retries, "mode": "standard"},
                signature_version="s3v4",
                max_pool_connections=max_pool_connections,
            ),
        )
        # Chunks are read on the calling thread so the digesting reader sees them in order
        self._transfer_config = TransferConfig(
            multipart_threshold=multipart_threshold,
            use_threads=False,
        )
        logger.debug("Object store client for %s (%s)", endpoint_url or "AWS", region)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    def ensure_bucket(self, bucket: str) -> bool:
        """Create the bucket unless it exists.

        Returns:
            True if the bucket was created, False if it was already there.

        Raises:
            StorageUnavailableError: If the store cannot be reached.
            StorageError: If the bucket cannot be checked or created.
        """
        try:
            with _s3_call("head_bucket", bucket=bucket, not_found=BucketNotFoundError):
                self._client.head_bucket(Bucket=bucket)
            return False
        except BucketNotFoundError:
            pass

        kwargs: dict[str, Any] = {"Bucket": bucket}
        # us-east-1 rejects an explicit LocationConstraint
        if self._region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        with _s3_call("create_bucket", bucket=bucket):
            self._client.create_bucket(**kwargs)
        logger.info("Created bucket %s", bucket)
        return True

    def upload_stream(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> UploadResult:
        """Stream a file-like object into the store.

        The transfer manager reads the stream in chunks and switches to a
        multipart upload above the configured threshold.

        Args:
            bucket: Target bucket.
            key: Object key.
            stream: Binary stream positioned at the start of the content.
            content_type: MIME type recorded on the object.
            metadata: User metadata recorded on the object.
            overwrite: Replace an existing object under the same key.

        Returns:
            UploadResult with the digest and size of the bytes written.

        Raises:
            ObjectExistsError: If the key is taken and overwrite is False.
            BucketNotFoundError: If the bucket does not exist.
            StorageUnavailableError: If the store cannot be reached.
            StorageError: If the upload fails.
        """
        if not overwrite and self.exists(bucket, key):
            raise ObjectExistsError(
                f"Refusing to overwrite {bucket}/{key}",
                bucket=bucket,
                key=key,
                operation="upload",
            )

        reader = _DigestingReader(stream)
        extra_args: dict[str, Any] = {"ContentType": content_type}
        if metadata:
            extra_args["Metadata"] = metadata

        with _s3_call("upload", bucket=bucket, key=key):
            self._client.upload_fileobj(
                reader, bucket, key, ExtraArgs=extra_args, Config=self._transfer_config
            )

        logger.debug("Uploaded %s/%s (%d bytes)", bucket, key, reader.size_bytes)
        return UploadResult(
            key=key,
            bucket=bucket,
            sha256_digest=reader.hexdigest,
            size_bytes=reader.size_bytes,
            content_type=content_type,
        )

    def download(self, bucket: str, key: str) -> tuple[bytes, ObjectMetadata]:
        """Read a whole object into memory.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            StorageUnavailableError: If the store cannot be reached.
        """
        with _s3_call("download", bucket=bucket, key=key, not_found=ObjectNotFoundError):
            response = self._client.get_object(Bucket=bucket, Key=key)
            data = response["Body"].read()
        return data, _object_metadata(bucket, key, response, len(data))

    def delete(self, bucket: str, key: str) -> bool:
        """Delete an object. Deleting a missing key succeeds.

        Raises:
            StorageUnavailableError: If the store cannot be reached.
            StorageError: If the delete is rejected.
        """
        with _s3_call("delete", bucket=bucket, key=key):
            self._client.delete_object(Bucket=bucket, Key=key)
        logger.debug("Deleted %s/%s", bucket, key)
        return True

    def exists(self, bucket: str, key: str) -> bool:
        """Whether an object is stored under the key."""
        try:
            with _s3_call("exists", bucket=bucket, key=key, not_found=ObjectNotFoundError):
                self._client.head_object(Bucket=bucket, Key=key)
        except ObjectNotFoundError:
            return False
        return True

    def get_metadata(self, bucket: str, key: str) -> ObjectMetadata:
        """Object metadata without its content.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        with _s3_call("get_metadata", bucket=bucket, key=key, not_found=ObjectNotFoundError):
            response = self._client.head_object(Bucket=bucket, Key=key)
        return _object_metadata(bucket, key, response, response.get("ContentLength", 0))
