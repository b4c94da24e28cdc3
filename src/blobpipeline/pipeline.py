"""
Request pipeline built on the azure-storage-blob client stack.

The storage SDK owns request building, signing and response parsing. This
module supplies the parts it lets callers replace:

    ... -> RetryPolicy -> (storage headers, shared-key signing, ...)
        -> RequestLogPolicy -> HttpSender

RetryPolicy takes the SDK's ``retry_policy`` slot, so it sees every try of an
operation. RequestLogPolicy is the last policy before the sender and logs each
try as it goes over the wire. A Pipeline holds no per-request state and may be
shared by any number of handles and tasks.
"""

import asyncio
import base64
import binascii
import logging
import time
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import aiohttp
from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceRequestTimeoutError,
    ServiceResponseError,
    ServiceResponseTimeoutError,
)
from azure.core.pipeline import PipelineRequest, PipelineResponse
from azure.core.pipeline.policies import AsyncHTTPPolicy
from azure.storage.blob import LocationMode

from .errors import (
    BlobPipelineError,
    InvalidCredentialError,
    NetworkError,
    OperationCanceledError,
    ServerError,
    TryTimeoutError,
    is_retryable_status,
)
from .models import redact_url
from .transport import AiohttpSender, HttpSender, TransportOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Largest body a single Put Blob accepts.
MAX_UPLOAD_BLOB_BYTES = 256 * 1024 * 1024

# Keyword argument that carries an OperationContext through the SDK call.
OPERATION_OPTION = "blobpipeline_operation"
# PipelineContext key holding the current try number for RequestLogPolicy.
TRY_CONTEXT_KEY = "blobpipeline_try"

# Options the SDK's own retry policy would consume; none of them may reach the sender.
_STORAGE_RETRY_OPTIONS = (
    "retry_total",
    "retry_connect",
    "retry_read",
    "retry_status",
    "retry_to_secondary",
    "hosts",
    "retry_hook",
)


class RetryPolicyType(Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"  # Constant delay between tries


@dataclass(frozen=True)
class RetryOptions:
    """
    How failed tries are repeated. Durations are in seconds.

    max_tries: total tries including the first; 1 disables retries.
    try_timeout: upper bound for a single try.
    retry_delay: base back-off; doubled per retry for EXPONENTIAL.
    max_retry_delay: cap on any single back-off.
    """

    policy: RetryPolicyType = RetryPolicyType.EXPONENTIAL
    max_tries: int = 4
    try_timeout: float = 60.0
    retry_delay: float = 4.0
    max_retry_delay: float = 120.0

    def __post_init__(self) -> None:
        if self.max_tries < 1:
            raise ValueError("max_tries must be at least 1")
        if self.try_timeout <= 0:
            raise ValueError("try_timeout must be positive")
        if self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ValueError("retry delays must not be negative")
        if self.retry_delay > self.max_retry_delay:
            raise ValueError("retry_delay must not exceed max_retry_delay")

    def delay_for(self, retry: int) -> float:
        """Back-off before retry number ``retry`` (1 for the first retry)."""
        if self.policy is RetryPolicyType.EXPONENTIAL:
            delay = self.retry_delay * 2 ** (retry - 1)
        else:
            delay = self.retry_delay
        return min(delay, self.max_retry_delay)


@dataclass(frozen=True)
class RequestLogOptions:
    # A successful try slower than this is logged as a warning; <= 0 disables.
    log_warning_if_try_over_threshold: float = 3.0


@dataclass(frozen=True)
class TelemetryOptions:
    value: str = ""  # Prepended to the User-Agent header


@dataclass(frozen=True)
class DownloadOptions:
    """Sizes of the ranged GETs a download is split into."""

    initial_get_size: int = 32 * 1024 * 1024  # fetched by download() itself
    chunk_get_size: int = 4 * 1024 * 1024  # each later GET made while reading the body

    def __post_init__(self) -> None:
        if self.initial_get_size < 1 or self.chunk_get_size < 1:
            raise ValueError("download GET sizes must be positive")


@dataclass(frozen=True)
class PipelineOptions:
    retry: RetryOptions = field(default_factory=RetryOptions)
    request_log: RequestLogOptions = field(default_factory=RequestLogOptions)
    telemetry: TelemetryOptions = field(default_factory=TelemetryOptions)
    transport: TransportOptions = field(default_factory=TransportOptions)
    download: DownloadOptions = field(default_factory=DownloadOptions)
    # Replaces the default AiohttpSender; see HttpSender for the contract.
    sender: HttpSender | None = None


@dataclass(eq=False)
class OperationContext:
    """State shared by one handle operation and the RetryPolicy running its tries."""

    cancel: asyncio.Event | None = None
    attempts: int = 0
    response: PipelineResponse | None = None  # last response returned to the SDK

    def kwargs(self) -> dict[str, Any]:
        return {OPERATION_OPTION: self}


async def _cancel_pending(futures) -> None:
    pending = [f for f in futures if not f.done()]
    for f in pending:
        f.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def wait_or_cancel(
    aw: Awaitable[T],
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
) -> T:
    """
    Await ``aw`` unless ``cancel`` is set or ``timeout`` elapses first.

    Raises OperationCanceledError or asyncio.TimeoutError; in both cases the
    unfinished work is cancelled before this returns.
    """
    if cancel is not None and cancel.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise OperationCanceledError("Operation canceled")

    task = asyncio.ensure_future(aw)
    waiters = {task}
    cancel_waiter = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        await _cancel_pending(waiters)

    if task in done:
        return task.result()
    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCanceledError("Operation canceled")
    raise asyncio.TimeoutError()


class RetryPolicy(AsyncHTTPPolicy):
    """
    Repeats failed tries of one request.

    Network failures, try timeouts and 5xx/429 responses are retried until
    ``max_tries`` is used up. Every other status is handed back to the SDK,
    which raises the matching HttpResponseError. All tries share one
    x-ms-client-request-id.
    """

    def __init__(self, options: RetryOptions) -> None:
        super().__init__()
        self.options = options

    async def send(self, request: PipelineRequest) -> PipelineResponse:
        options = self.options
        context_options = request.context.options
        operation = context_options.pop(OPERATION_OPTION, None) or OperationContext()
        location_mode = context_options.pop("location_mode", LocationMode.PRIMARY)
        for key in _STORAGE_RETRY_OPTIONS:
            context_options.pop(key, None)
        client_request_id = context_options.pop("client_request_id", None) or str(
            uuid.uuid4()
        )

        cancel = operation.cancel
        http_request = request.http_request
        target = f"{http_request.method} {redact_url(http_request.url)}"
        last_error: BlobPipelineError | None = None

        for attempt in range(1, options.max_tries + 1):
            if attempt > 1:
                delay = options.delay_for(attempt - 1)
                logger.debug(
                    "Retrying %s in %.3fs (try=%d): %s", target, delay, attempt, last_error
                )
                await self._backoff(delay, cancel, attempt - 1)
            if cancel is not None and cancel.is_set():
                raise OperationCanceledError("Operation canceled", attempts=attempt - 1)

            operation.attempts = attempt
            request.context[TRY_CONTEXT_KEY] = attempt
            # StorageHeadersPolicy consumes this on every try.
            context_options["client_request_id"] = client_request_id

            try:
                response = await self._try(request, cancel, target, attempt)
            except BlobPipelineError as e:
                e.attempts = attempt
                if not e.retryable:
                    raise
                last_error = e
                continue

            status = response.http_response.status_code
            if is_retryable_status(status) and attempt < options.max_tries:
                await response.http_response.close()
                last_error = ServerError(
                    f"{target} returned {status}",
                    status_code=status,
                    error_code=response.http_response.headers.get("x-ms-error-code"),
                    attempts=attempt,
                )
                continue

            response.http_response.location_mode = location_mode
            operation.response = response
            return response

        raise last_error

    async def _try(
        self,
        request: PipelineRequest,
        cancel: asyncio.Event | None,
        target: str,
        attempt: int,
    ) -> PipelineResponse:
        """Run one try, bounded by try_timeout and the cancel event."""
        try:
            return await wait_or_cancel(
                self.next.send(request), cancel, self.options.try_timeout
            )
        except OperationCanceledError:
            raise OperationCanceledError(f"{target} canceled during try {attempt}") from None
        except asyncio.TimeoutError as e:
            raise TryTimeoutError(
                f"{target} exceeded try timeout of {self.options.try_timeout}s", error=e
            ) from e
        except BlobPipelineError:
            raise
        except ClientAuthenticationError as e:
            raise InvalidCredentialError(f"Signing {target} failed: {e.message}", error=e) from e
        except (ServiceRequestTimeoutError, ServiceResponseTimeoutError) as e:
            raise TryTimeoutError(f"{target} timed out", error=e) from e
        except (ServiceRequestError, ServiceResponseError, aiohttp.ClientError, OSError) as e:
            raise NetworkError(f"{target} failed: {e}", error=e) from e

    async def _backoff(
        self, delay: float, cancel: asyncio.Event | None, retry: int
    ) -> None:
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise OperationCanceledError(
            "Operation canceled during retry back-off", attempts=retry
        )


def _is_logged_as_error(status: int) -> bool:
    # Expected outcomes of conditional or existence-checking calls stay quiet.
    if 400 <= status <= 499:
        return status not in (404, 409, 412, 416)
    return 500 <= status <= 599


class RequestLogPolicy(AsyncHTTPPolicy):
    def __init__(self, options: RequestLogOptions) -> None:
        super().__init__()
        self.options = options

    async def send(self, request: PipelineRequest) -> PipelineResponse:
        http_request = request.http_request
        attempt = request.context.get(TRY_CONTEXT_KEY, 1)
        method = http_request.method
        url = redact_url(http_request.url)
        logger.debug("==> OUTGOING REQUEST (try=%d) %s %s", attempt, method, url)

        start = time.monotonic()
        try:
            response = await self.next.send(request)
        except (AzureError, aiohttp.ClientError, OSError) as e:
            logger.error(
                "<== REQUEST ERROR (try=%d) %s %s after %.3fs: %s",
                attempt,
                method,
                url,
                time.monotonic() - start,
                e,
            )
            raise
        elapsed = time.monotonic() - start

        status = response.http_response.status_code
        threshold = self.options.log_warning_if_try_over_threshold
        if _is_logged_as_error(status):
            logger.error(
                "<== RESPONSE ERROR (try=%d) %s %s status=%d after %.3fs",
                attempt,
                method,
                url,
                status,
                elapsed,
            )
        elif status < 400 and 0 < threshold < elapsed:
            logger.warning(
                "<== SLOW RESPONSE (try=%d) %s %s status=%d took %.3fs (threshold %.3fs)",
                attempt,
                method,
                url,
                status,
                elapsed,
                threshold,
            )
        else:
            logger.debug(
                "<== RESPONSE (try=%d) %s %s status=%d in %.3fs",
                attempt,
                method,
                url,
                status,
                elapsed,
            )
        return response


class Pipeline:
    """
    Credential, options and sender shared by every handle built from it.

    Safe to share: once built, nothing on the pipeline changes. Build a new
    one to change retry, logging or transport behavior.
    """

    def __init__(
        self, credential: AzureNamedKeyCredential, options: PipelineOptions | None = None
    ) -> None:
        self.credential = credential
        self.options = options or PipelineOptions()
        self._owns_sender = self.options.sender is None
        self.sender: HttpSender = self.options.sender or AiohttpSender(
            self.options.transport
        )

    async def __aenter__(self) -> "Pipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def user_agent(self) -> str:
        from . import __version__

        agent = f"blobpipeline/{__version__}"
        value = self.options.telemetry.value
        return f"{value} {agent}" if value else agent

    def client_kwargs(self) -> dict[str, Any]:
        """
        Keyword arguments for an azure-storage-blob client bound to this pipeline.

        The SDK links the policies it is given into its own chain, so every
        client gets fresh policy instances.
        """
        return {
            "credential": self.credential,
            "transport": self.sender,
            "retry_policy": RetryPolicy(self.options.retry),
            # The storage clients always build their own logging policy, so
            # ours runs as the last policy before the sender.
            "_additional_pipeline_policies": [RequestLogPolicy(self.options.request_log)],
            "user_agent": self.user_agent,
            "permit_redirects": False,
            "max_single_put_size": MAX_UPLOAD_BLOB_BYTES,
            "max_single_get_size": self.options.download.initial_get_size,
            "max_chunk_get_size": self.options.download.chunk_get_size,
        }

    async def close(self) -> None:
        """Release the default sender's connections. A caller-supplied sender is left open."""
        if self._owns_sender:
            await self.sender.close()


def _check_credential(credential: AzureNamedKeyCredential) -> None:
    if not isinstance(credential, AzureNamedKeyCredential):
        raise InvalidCredentialError(
            f"Unsupported credential type {type(credential).__name__}"
        )
    name, key = credential.named_key
    if not name:
        raise InvalidCredentialError("Account name must not be empty")
    try:
        decoded = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidCredentialError("Account key is not valid base64", error=e) from e
    if not decoded:
        raise InvalidCredentialError("Account key must not be empty")


def new_pipeline(
    credential: AzureNamedKeyCredential, options: PipelineOptions | None = None
) -> Pipeline:
    """Build a pipeline. Raises InvalidCredentialError for an unusable credential."""
    _check_credential(credential)
    return Pipeline(credential, options)
