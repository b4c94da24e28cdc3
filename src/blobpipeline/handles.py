"""
Service -> container -> blob handles.

A handle wraps the matching azure-storage-blob client plus the Pipeline it
was built from. Deriving a child only composes the URL; the pipeline is passed
along untouched, so every handle derived from one pipeline retries, logs and
sends the same way.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import Any, BinaryIO, TypeVar
from urllib.parse import urlsplit

from azure.core.exceptions import HttpResponseError
from azure.storage.blob import BlobType
from azure.storage.blob.aio import BlobClient, BlobServiceClient, ContainerClient, StorageStreamDownloader

from .errors import OperationCanceledError, StreamReadError, error_from_http_error
from .models import (
    AccessTier,
    BlobAccessConditions,
    BlobHTTPHeaders,
    DeleteResult,
    DeleteSnapshotsOption,
    UploadResult,
    redact_url,
)
from .pipeline import MAX_UPLOAD_BLOB_BYTES, OperationContext, Pipeline, wait_or_cancel
from .retry_reader import RetryReader, RetryReaderOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Largest range for which the service returns a Content-MD5.
MAX_RANGE_MD5_BYTES = 4 * 1024 * 1024


def new_service_handle(pipeline: Pipeline, base_url: str) -> "ServiceHandle":
    parts = urlsplit(base_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"Invalid service URL: {base_url!r}")
    return ServiceHandle(BlobServiceClient(base_url, **pipeline.client_kwargs()), pipeline)


def _check_name(name: str) -> None:
    if not name:
        raise ValueError("Resource name must not be empty")


async def _call(operation: OperationContext, aw: Awaitable[T]) -> T:
    """Run one SDK call under the operation's cancel event, mapping service errors."""
    try:
        return await wait_or_cancel(aw, operation.cancel)
    except OperationCanceledError as e:
        if not e.attempts:
            e.attempts = operation.attempts
        raise
    except HttpResponseError as e:
        raise error_from_http_error(e, operation.attempts) from e


@dataclass(frozen=True)
class ServiceHandle:
    client: BlobServiceClient
    pipeline: Pipeline

    @property
    def url(self) -> str:
        return self.client.url

    def get_container(self, container_name: str) -> "ContainerHandle":
        _check_name(container_name)
        return ContainerHandle(self.client.get_container_client(container_name), self.pipeline)

    def with_pipeline(self, pipeline: Pipeline) -> "ServiceHandle":
        return new_service_handle(pipeline, self.url)


@dataclass(frozen=True)
class ContainerHandle:
    client: ContainerClient
    pipeline: Pipeline

    @property
    def url(self) -> str:
        return self.client.url

    @property
    def name(self) -> str:
        return self.client.container_name

    def get_blob(self, blob_name: str) -> "BlobHandle":
        _check_name(blob_name)
        return BlobHandle(self.client.get_blob_client(blob_name), self.pipeline)

    def with_pipeline(self, pipeline: Pipeline) -> "ContainerHandle":
        client = ContainerClient.from_container_url(self.url, **pipeline.client_kwargs())
        return ContainerHandle(client, pipeline)


def _read_body(data: bytes | bytearray | memoryview | BinaryIO) -> bytes:
    if isinstance(data, (bytes, bytearray, memoryview)):
        body = bytes(data)
    elif hasattr(data, "read"):
        body = data.read()
        if not isinstance(body, bytes):
            raise TypeError("Upload stream must be opened in binary mode")
    else:
        raise TypeError(f"Cannot upload object of type {type(data).__name__}")
    if len(body) > MAX_UPLOAD_BLOB_BYTES:
        raise ValueError(
            f"Upload of {len(body)} bytes exceeds the {MAX_UPLOAD_BLOB_BYTES} byte limit"
        )
    return body


def _check_metadata(metadata: dict[str, str] | None) -> dict[str, str] | None:
    if metadata is None:
        return None
    for key in metadata:
        if not key.isidentifier():
            raise ValueError(f"Metadata key {key!r} is not a valid identifier")
    return {key.lower(): str(value) for key, value in metadata.items()}


class DownloadResponse:
    """Properties of a Get Blob response; call ``body()`` for the content."""

    def __init__(
        self,
        downloader: StorageStreamDownloader,
        operation: OperationContext,
        blob: "BlobHandle",
        offset: int,
        reader_options: RetryReaderOptions,
    ) -> None:
        self.downloader = downloader
        self._operation = operation
        self._blob = blob
        self._offset = offset
        self._reader_options = reader_options

        props = downloader.properties
        http_response = operation.response.http_response if operation.response else None
        headers = http_response.headers if http_response is not None else {}
        self.status = http_response.status_code if http_response is not None else None
        self.attempts = operation.attempts
        self.etag = props.etag
        self.last_modified = props.last_modified
        self.content_type = props.content_settings.content_type
        # Bytes body() yields, not the length of the first GET.
        self.content_length = downloader.size
        self.content_range = headers.get("content-range")
        self.content_md5 = headers.get("content-md5")
        self.blob_content_md5 = headers.get("x-ms-blob-content-md5")
        self.blob_type = headers.get("x-ms-blob-type")
        self.request_id = headers.get("x-ms-request-id")
        self.version = headers.get("x-ms-version")
        self.metadata = dict(props.metadata or {})

    def body(self, options: RetryReaderOptions | None = None) -> RetryReader:
        return RetryReader(
            self.downloader.chunks(),
            self._get_range,
            self._offset,
            self.content_length,
            self.etag,
            options or self._reader_options,
            operation=self._operation,
            read_timeout=self._blob.pipeline.options.retry.try_timeout,
        )

    async def _get_range(
        self, offset: int, count: int | None, etag: str | None, operation: OperationContext
    ) -> AsyncIterator[bytes]:
        conditions = BlobAccessConditions(if_match=etag).to_kwargs()
        downloader = await self._blob._download(operation, offset, count, False, conditions)
        return downloader.chunks()


@dataclass(frozen=True)
class BlobHandle:
    client: BlobClient
    pipeline: Pipeline

    @property
    def url(self) -> str:
        return self.client.url

    @property
    def container_name(self) -> str:
        return self.client.container_name

    @property
    def name(self) -> str:
        return self.client.blob_name

    def with_pipeline(self, pipeline: Pipeline) -> "BlobHandle":
        return BlobHandle(BlobClient.from_blob_url(self.url, **pipeline.client_kwargs()), pipeline)

    async def upload(
        self,
        data: bytes | bytearray | memoryview | BinaryIO,
        headers: BlobHTTPHeaders | None = None,
        metadata: dict[str, str] | None = None,
        access_conditions: BlobAccessConditions | None = None,
        tier: AccessTier = AccessTier.NONE,
        *,
        cancel: asyncio.Event | None = None,
    ) -> UploadResult:
        """
        Create or replace the blob as a block blob in one Put Blob request.

        The whole body is read into memory first so that every try resends
        identical bytes.
        """
        body = _read_body(data)
        kwargs: dict[str, Any] = (access_conditions or BlobAccessConditions()).to_kwargs()
        if headers is not None:
            kwargs["content_settings"] = headers.to_content_settings()
        blob_tier = tier.to_blob_tier()
        if blob_tier is not None:
            kwargs["standard_blob_tier"] = blob_tier

        operation = OperationContext(cancel)
        result = await _call(
            operation,
            self.client.upload_blob(
                body,
                blob_type=BlobType.BLOCKBLOB,
                length=len(body),
                metadata=_check_metadata(metadata),
                overwrite=True,
                **kwargs,
                **operation.kwargs(),
            ),
        )
        logger.debug("Uploaded %d bytes to %s", len(body), redact_url(self.url))
        content_md5 = result.get("content_md5")
        return UploadResult(
            etag=result.get("etag"),
            last_modified=result.get("last_modified"),
            content_md5=bytes(content_md5) if content_md5 else None,
            request_id=result.get("request_id"),
            version=result.get("version"),
            attempts=operation.attempts,
        )

    async def download(
        self,
        offset: int = 0,
        count: int | None = None,
        access_conditions: BlobAccessConditions | None = None,
        range_get_content_md5: bool = False,
        *,
        cancel: asyncio.Event | None = None,
        reader_options: RetryReaderOptions | None = None,
    ) -> DownloadResponse:
        """
        Start reading the blob, or ``count`` bytes of it from ``offset``.

        A count of None or 0 reads to the end of the blob. The returned
        response has the blob properties; read the content with
        ``response.body()``, which resumes on interrupted reads.
        """
        if offset < 0 or (count is not None and count < 0):
            raise ValueError("offset and count must not be negative")
        if range_get_content_md5 and (not count or count > MAX_RANGE_MD5_BYTES):
            raise ValueError(
                f"range_get_content_md5 needs a count of at most {MAX_RANGE_MD5_BYTES} bytes"
            )
        reader_options = reader_options or RetryReaderOptions()
        conditions = (access_conditions or BlobAccessConditions()).to_kwargs()

        retries = 0
        while True:
            operation = OperationContext(cancel)
            try:
                downloader = await self._download(
                    operation, offset, count or None, range_get_content_md5, conditions
                )
            except StreamReadError as e:
                if retries >= reader_options.max_retry_requests:
                    e.attempts = retries + 1
                    raise
                retries += 1
                logger.warning(
                    "Retrying download of %s (retry %d/%d): %s",
                    redact_url(self.url),
                    retries,
                    reader_options.max_retry_requests,
                    e,
                )
                continue
            return DownloadResponse(downloader, operation, self, offset, reader_options)

    async def _download(
        self,
        operation: OperationContext,
        offset: int,
        count: int | None,
        range_get_content_md5: bool,
        conditions: dict[str, Any],
    ) -> StorageStreamDownloader:
        return await _call(
            operation,
            self.client.download_blob(
                # An unranged read lets the SDK handle empty blobs.
                offset if offset or count else None,
                count,
                validate_content=range_get_content_md5,
                decompress=False,
                **conditions,
                **operation.kwargs(),
            ),
        )

    async def delete(
        self,
        delete_snapshots: DeleteSnapshotsOption = DeleteSnapshotsOption.NONE,
        access_conditions: BlobAccessConditions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeleteResult:
        kwargs: dict[str, Any] = (access_conditions or BlobAccessConditions()).to_kwargs()
        if delete_snapshots is not DeleteSnapshotsOption.NONE:
            kwargs["delete_snapshots"] = delete_snapshots.value

        operation = OperationContext(cancel)
        await _call(operation, self.client.delete_blob(**kwargs, **operation.kwargs()))
        headers = operation.response.http_response.headers
        return DeleteResult(
            request_id=headers.get("x-ms-request-id"),
            version=headers.get("x-ms-version"),
            date=headers.get("date"),
            attempts=operation.attempts,
        )
