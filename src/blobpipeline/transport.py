import asyncio
import logging
from dataclasses import dataclass

import aiohttp
from azure.core.pipeline.transport import AioHttpTransport, AsyncHttpTransport
from azure.core.rest._aiohttp import RestAioHttpTransportResponse

from .errors import StreamReadError
from .models import redact_url

logger = logging.getLogger(__name__)


class HttpSender(AsyncHttpTransport):
    """
    Performs the network exchange for one try.

    ``send(request, *, stream=False, **kwargs)`` receives a fully prepared
    azure-core request: it already carries the date, version and
    Authorization headers. A sender MUST NOT retry. RetryPolicy owns retries,
    and a sender that retries on its own multiplies the attempt budget.

    Any HTTP status is returned as a response. Failures that produced no
    response are raised as azure-core ServiceRequestError/ServiceResponseError
    (or the underlying aiohttp/OSError, which RetryPolicy maps). When
    ``stream`` is set, the body must stay unread until the SDK iterates it,
    and a body cut short should raise StreamReadError.

    Subclasses only have to implement ``send``.
    """

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aexit__(self, exc_type=None, exc_value=None, traceback=None) -> None:
        await self.close()


@dataclass(frozen=True)
class TransportOptions:
    """Connection pool settings for the default sender. Durations in seconds."""

    max_idle_connections: int = 100
    idle_connection_timeout: float = 180.0
    dial_timeout: float = 30.0
    read_timeout: float = 60.0  # longest wait for any single socket read
    read_chunk_size: int = 64 * 1024


class _BodyStream:
    """Download body iterator handed to the storage SDK for streamed GETs."""

    def __init__(self, pipeline, response: RestAioHttpTransportResponse) -> None:
        self.pipeline = pipeline
        self.response = response
        self.request = response.request
        self.block_size = response.block_size
        self.content_length = int(response.internal_response.headers.get("Content-Length", 0))
        self.properties = None  # filled in by the SDK's deserializer

    def __len__(self) -> int:
        return self.content_length

    def __aiter__(self) -> "_BodyStream":
        return self

    async def __anext__(self) -> bytes:
        internal = self.response.internal_response
        try:
            chunk = await internal.content.read(self.block_size)
        except asyncio.CancelledError:
            internal.close()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            internal.close()
            raise StreamReadError(
                f"Reading body of {self.request.method} {redact_url(self.request.url)} "
                f"failed: {e!r}",
                status_code=internal.status,
                error=e,
            ) from e
        if not chunk:
            internal.release()
            raise StopAsyncIteration
        return chunk


class _StreamedResponse(RestAioHttpTransportResponse):
    def stream_download(self, pipeline, **kwargs) -> _BodyStream:
        return _BodyStream(pipeline, self)


class AiohttpSender(AioHttpTransport, HttpSender):
    """
    Default sender: azure-core's aiohttp transport over one pooled session.

    Proxies from the environment are ignored. The session is bound to the
    event loop that opened it; when a later call runs on a different loop
    the session is dropped and a new one is created on that loop.
    """

    def __init__(self, options: TransportOptions | None = None) -> None:
        self.options = options or TransportOptions()
        super().__init__(
            connection_timeout=self.options.dial_timeout,
            read_timeout=self.options.read_timeout,
            connection_data_block_size=self.options.read_chunk_size,
            use_env_settings=False,
        )
        self._session_loop: asyncio.AbstractEventLoop | None = None

    def _drop_foreign_session(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.session is None:
            return
        if self._session_loop is not loop or self.session.closed:
            logger.debug("Discarding HTTP session bound to another event loop")
            # Its connections belong to the old loop and cannot be closed from here.
            self.session.detach()
            self.session = None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._drop_foreign_session(loop)
        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=self.options.max_idle_connections,
                keepalive_timeout=self.options.idle_connection_timeout,
            )
            self.session = aiohttp.ClientSession(
                connector=connector,
                cookie_jar=aiohttp.DummyCookieJar(),
                trust_env=False,
                auto_decompress=False,
            )
            self._session_loop = loop
        await super().open()

    async def send(self, request, *, stream: bool = False, **config):
        response = await super().send(request, stream=stream, **config)
        if stream and response.status_code < 300:
            return _StreamedResponse(
                request=request,
                internal_response=response.internal_response,
                block_size=response.block_size,
                decompress=False,
            )
        return response

    async def close(self) -> None:
        if self.session is None:
            return
        self._drop_foreign_session(asyncio.get_running_loop())
        if self.session is not None:
            await super().close()
            logger.debug("Closed HTTP session")
