"""
Download body that resumes after a partial read.

This retry scope is separate from the request-level RetryPolicy. It only
covers the body of a download breaking, or stalling, after the response
headers arrived. Each resumption is a new ranged download (which goes through
the pipeline and its own retry budget), pinned to the original ETag so a blob
replaced mid-download fails with ConditionNotMetError instead of returning
mixed content.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from azure.core.exceptions import HttpResponseError, IncompleteReadError, ServiceResponseError

from .errors import StreamReadError, error_from_http_error
from .pipeline import OperationContext, wait_or_cancel

logger = logging.getLogger(__name__)

# (offset, count or None for "to the end", etag or None, operation) -> body chunks
GetRange = Callable[
    [int, int | None, str | None, OperationContext], Awaitable[AsyncIterator[bytes]]
]


@dataclass(frozen=True)
class RetryReaderOptions:
    max_retry_requests: int = 3
    # Treat a body that ends before the expected length as a read failure.
    treat_early_close_as_error: bool = False
    # Longest wait for the next chunk; None uses the pipeline's try timeout.
    read_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_retry_requests < 0:
            raise ValueError("max_retry_requests must not be negative")
        if self.read_timeout is not None and self.read_timeout <= 0:
            raise ValueError("read_timeout must be positive")


async def _next_or_none(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class RetryReader:
    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        get_range: GetRange,
        offset: int,
        count: int | None,
        etag: str | None,
        options: RetryReaderOptions | None = None,
        *,
        operation: OperationContext | None = None,
        read_timeout: float | None = None,
    ) -> None:
        self.options = options or RetryReaderOptions()
        self._chunks = chunks
        self._get_range = get_range
        self._offset = offset
        self._remaining = count
        self._etag = etag
        self._operation = operation or OperationContext()
        self._cancel = self._operation.cancel
        self._read_timeout = (
            self.options.read_timeout if self.options.read_timeout is not None else read_timeout
        )
        self._buffer = bytearray()
        self._closed = False
        self.retries = 0

    async def __aenter__(self) -> "RetryReader":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        if self._buffer:
            data = bytes(self._buffer)
            self._buffer.clear()
            yield data
        while True:
            chunk = await self._next_chunk()
            if chunk is None:
                return
            yield chunk

    async def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes; everything that is left when size < 0."""
        if size is None or size < 0:
            return await self.readall()
        while len(self._buffer) < size:
            chunk = await self._next_chunk()
            if chunk is None:
                break
            self._buffer.extend(chunk)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def readall(self) -> bytes:
        data = bytearray(self._buffer)
        self._buffer.clear()
        while True:
            chunk = await self._next_chunk()
            if chunk is None:
                break
            data.extend(chunk)
        return bytes(data)

    async def close(self) -> None:
        """Stop reading. Chunks already fetched are discarded."""
        self._closed = True
        self._buffer.clear()

    async def _next_chunk(self) -> bytes | None:
        while True:
            if self._closed or (self._remaining is not None and self._remaining <= 0):
                return None
            try:
                chunk = await wait_or_cancel(
                    _next_or_none(self._chunks), self._cancel, self._read_timeout
                )
            except asyncio.TimeoutError as e:
                error = StreamReadError(
                    f"No body data within {self._read_timeout}s at offset {self._offset}",
                    error=e,
                )
            except StreamReadError as e:
                error = e
            except (IncompleteReadError, ServiceResponseError) as e:
                error = StreamReadError(f"Reading body failed: {e}", error=e)
            except HttpResponseError as e:
                mapped = error_from_http_error(e, self._operation.attempts)
                if not isinstance(mapped, StreamReadError):
                    raise mapped from e
                error = mapped
            else:
                if chunk is not None:
                    self._offset += len(chunk)
                    if self._remaining is not None:
                        self._remaining -= len(chunk)
                    return chunk
                if self._remaining is None or not self.options.treat_early_close_as_error:
                    return None
                error = StreamReadError(
                    f"Body ended with {self._remaining} bytes still expected"
                )
            await self._resume(error)

    async def _resume(self, error: StreamReadError) -> None:
        while True:
            if self.retries >= self.options.max_retry_requests:
                error.attempts = self.retries + 1
                raise error
            self.retries += 1
            logger.warning(
                "Resuming read at offset %d (retry %d/%d): %s",
                self._offset,
                self.retries,
                self.options.max_retry_requests,
                error,
            )
            self._operation = OperationContext(self._cancel)
            try:
                self._chunks = await self._get_range(
                    self._offset, self._remaining, self._etag, self._operation
                )
                return
            except StreamReadError as e:
                error = e
