import asyncio
import base64
import hashlib
import re
import threading
from dataclasses import dataclass, field
from email.utils import formatdate

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from azure.core.credentials import AzureNamedKeyCredential
from azure.core.pipeline import PipelineContext, PipelineRequest, PipelineResponse
from azure.core.rest import HttpRequest
from multidict import CIMultiDict

from blobpipeline import (
    DownloadOptions,
    PipelineOptions,
    RequestLogOptions,
    RetryOptions,
    TransportOptions,
    new_pipeline,
    new_service_handle,
)
from blobpipeline.pipeline import OPERATION_OPTION, TRY_CONTEXT_KEY

ACCOUNT = "devaccount"
ACCOUNT_KEY = base64.b64encode(b"not-a-real-key").decode()


def _md5(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode()


@dataclass
class Fault:
    """
    One scripted misbehaviour, used up by the first request with ``method``.

    status: answer with this status instead (2xx still performs the operation)
    truncate_after: send that many body bytes, then drop the connection
    stall_after: send that many body bytes, then stop sending
    delay: wait this long before answering
    """

    method: str
    status: int | None = None
    headers: dict = field(default_factory=dict)
    truncate_after: int | None = None
    stall_after: int | None = None
    delay: float = 0.0


@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: CIMultiDict
    body: bytes


class FakeBlobService:
    """
    In-memory blob service speaking just enough of the REST API for
    Put Blob, Get Blob and Delete Blob, served over real HTTP.

    Blob URLs look like ``{url}/{container}/{blob}`` where ``url`` is the
    path-style account endpoint the SDK uses for 127.0.0.1.
    """

    def __init__(self):
        self.blobs: dict[tuple[str, str], dict] = {}
        self.requests: list[RecordedRequest] = []
        self.faults: list[Fault] = []
        self.release = asyncio.Event()
        self.url = ""
        self._etag_counter = 0
        self.app = web.Application()
        self.app.router.add_route("*", "/{account}/{container}/{blob:.+}", self.handle)

    def blob_data(self, container: str, name: str) -> bytes:
        return self.blobs[(container, name)]["data"]

    def requests_for(self, method: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method]

    async def handle(self, request: web.Request) -> web.StreamResponse:
        body = await request.read()
        self.requests.append(
            RecordedRequest(request.method, request.path, CIMultiDict(request.headers), body)
        )
        key = (request.match_info["container"], request.match_info["blob"])
        fault = self._take_fault(request.method)
        if fault is not None and fault.delay:
            await self._pause(fault.delay)
        if fault is not None and fault.status is not None and fault.status >= 300:
            if fault.status >= 400:
                code = fault.headers.get("x-ms-error-code", "InternalError")
                return self._error(fault.status, code, fault.headers)
            return web.Response(status=fault.status, headers=fault.headers)

        handler = {"PUT": self._put, "GET": self._get, "DELETE": self._delete}.get(request.method)
        if handler is None:
            return self._error(405, "UnsupportedHttpVerb")
        return await handler(request, key, body, fault)

    def _take_fault(self, method: str) -> Fault | None:
        for i, fault in enumerate(self.faults):
            if fault.method == method:
                return self.faults.pop(i)
        return None

    async def _pause(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.release.wait(), delay)
        except asyncio.TimeoutError:
            pass

    def _common_headers(self) -> dict:
        return {
            "x-ms-request-id": f"req-{len(self.requests)}",
            "x-ms-version": "2018-11-09",
            "Date": formatdate(usegmt=True),
        }

    def _error(self, status: int, code: str, extra: dict | None = None) -> web.Response:
        headers = self._common_headers()
        headers["x-ms-error-code"] = code
        headers.update(extra or {})
        body = (
            '<?xml version="1.0" encoding="utf-8"?>'
            f"<Error><Code>{code}</Code><Message>{code}</Message></Error>"
        )
        return web.Response(
            status=status, body=body.encode(), headers=headers, content_type="application/xml"
        )

    def _precondition_failed(self, headers, blob) -> bool:
        if_match = headers.get("If-Match")
        if if_match is not None and (blob is None or (if_match != "*" and blob["etag"] != if_match)):
            return True
        if_none_match = headers.get("If-None-Match")
        if if_none_match == "*" and blob is not None:
            return True
        return False

    async def _put(self, request, key, body, fault):
        blob = self.blobs.get(key)
        if self._precondition_failed(request.headers, blob):
            return self._error(412, "ConditionNotMet")
        self._etag_counter += 1
        etag = f'"0x8D{self._etag_counter:04d}"'
        last_modified = formatdate(usegmt=True)
        self.blobs[key] = {
            "data": body,
            "etag": etag,
            "last_modified": last_modified,
            "headers": CIMultiDict(request.headers),
        }
        headers = self._common_headers()
        headers.update({"ETag": etag, "Last-Modified": last_modified, "Content-MD5": _md5(body)})
        status = fault.status if fault is not None and fault.status else 201
        return web.Response(status=status, headers=headers)

    async def _get(self, request, key, body, fault):
        blob = self.blobs.get(key)
        if blob is None:
            return self._error(404, "BlobNotFound")
        if self._precondition_failed(request.headers, blob):
            return self._error(412, "ConditionNotMet")

        data = blob["data"]
        total = len(data)
        stored = blob["headers"]
        headers = self._common_headers()
        headers.update(
            {
                "ETag": blob["etag"],
                "Last-Modified": blob["last_modified"],
                "x-ms-blob-type": "BlockBlob",
                "Content-Type": stored.get("x-ms-blob-content-type", "application/octet-stream"),
            }
        )
        for name, value in stored.items():
            if name.lower().startswith("x-ms-meta-"):
                headers[name.lower()] = value

        status = 200
        byte_range = request.headers.get("x-ms-range")
        if byte_range:
            match = re.fullmatch(r"bytes=(\d+)-(\d*)", byte_range)
            start = int(match.group(1))
            end = int(match.group(2)) if match.group(2) else total - 1
            if start >= total:
                return self._error(416, "InvalidRange", {"Content-Range": f"bytes */{total}"})
            end = min(end, total - 1)
            data = data[start : end + 1]
            status = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{total}"
            if request.headers.get("x-ms-range-get-content-md5") == "true":
                headers["Content-MD5"] = _md5(data)

        response = web.StreamResponse(status=status, headers=headers)
        response.content_length = len(data)
        await response.prepare(request)
        if fault is not None and fault.truncate_after is not None:
            await response.write(data[: fault.truncate_after])
            request.transport.close()
            return response
        if fault is not None and fault.stall_after is not None:
            await response.write(data[: fault.stall_after])
            await self.release.wait()
            return response
        await response.write(data)
        await response.write_eof()
        return response

    async def _delete(self, request, key, body, fault):
        blob = self.blobs.get(key)
        if blob is None:
            return self._error(404, "BlobNotFound")
        if self._precondition_failed(request.headers, blob):
            return self._error(412, "ConditionNotMet")
        del self.blobs[key]
        return web.Response(status=202, headers=self._common_headers())


class ThreadedBlobServer:
    """FakeBlobService on its own event loop thread, for code that runs asyncio.run itself."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.service = None
        self._server = None

    def _run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(10)

    async def _start(self):
        self.service = FakeBlobService()
        self._server = TestServer(self.service.app, host="127.0.0.1")
        await self._server.start_server()
        self.service.url = str(self._server.make_url(f"/{ACCOUNT}"))

    async def _stop(self):
        self.service.release.set()
        await self._server.close()

    def start(self) -> FakeBlobService:
        self.thread.start()
        self._run(self._start())
        return self.service

    def stop(self) -> None:
        self._run(self._stop())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(10)
        self.loop.close()


class FakeHttpResponse:
    def __init__(self, status_code, headers=None):
        self.status_code = status_code
        self.headers = CIMultiDict(headers or {})
        self.closed = False

    async def close(self):
        self.closed = True


class ScriptedPolicy:
    """
    Stands in for everything below RetryPolicy. Replays a list of outcomes,
    one per try; the last one repeats.

    An outcome is an HTTP status, an exception instance to raise, or a
    ``(delay, status)`` tuple to answer after sleeping.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.tries: list[int] = []
        self.request_ids: list[str] = []
        self.responses: list[FakeHttpResponse] = []
        self.cancelled = 0

    async def send(self, request: PipelineRequest) -> PipelineResponse:
        self.tries.append(request.context.get(TRY_CONTEXT_KEY))
        self.request_ids.append(request.context.options.get("client_request_id"))
        index = min(len(self.tries), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, tuple):
            delay, outcome = outcome
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        response = FakeHttpResponse(outcome, {"x-ms-request-id": str(len(self.tries))})
        self.responses.append(response)
        return PipelineResponse(request.http_request, response, request.context)


def pipeline_request(url, operation=None, method="GET", **options) -> PipelineRequest:
    if operation is not None:
        options[OPERATION_OPTION] = operation
    return PipelineRequest(HttpRequest(method, url), PipelineContext(None, **options))


def make_options(sender=None, download=None, **retry) -> PipelineOptions:
    retry.setdefault("max_tries", 3)
    retry.setdefault("try_timeout", 5.0)
    retry.setdefault("retry_delay", 0.001)
    retry.setdefault("max_retry_delay", 0.01)
    return PipelineOptions(
        retry=RetryOptions(**retry),
        request_log=RequestLogOptions(log_warning_if_try_over_threshold=5.0),
        transport=TransportOptions(read_timeout=5.0),
        download=download or DownloadOptions(),
        sender=sender,
    )


@pytest.fixture
def credential():
    return AzureNamedKeyCredential(ACCOUNT, ACCOUNT_KEY)


@pytest.fixture
def scripted_policy():
    return ScriptedPolicy


@pytest_asyncio.fixture
async def blob_server():
    service = FakeBlobService()
    server = TestServer(service.app, host="127.0.0.1")
    await server.start_server()
    service.url = str(server.make_url(f"/{ACCOUNT}"))
    yield service
    service.release.set()
    await server.close()


@pytest.fixture
def threaded_blob_server():
    server = ThreadedBlobServer()
    yield server.start()
    server.stop()


@pytest_asyncio.fixture
async def pipeline_factory(credential):
    pipelines = []

    def factory(sender=None, download=None, **retry):
        pipeline = new_pipeline(credential, make_options(sender, download, **retry))
        pipelines.append(pipeline)
        return pipeline

    yield factory
    for pipeline in pipelines:
        await pipeline.close()


@pytest.fixture
def container(pipeline_factory, blob_server):
    pipeline = pipeline_factory()
    return new_service_handle(pipeline, blob_server.url).get_container("container")
