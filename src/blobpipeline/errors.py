from azure.core.exceptions import AzureError, HttpResponseError


class BlobPipelineError(AzureError):
    """Base class for every error surfaced by the pipeline or the handles."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        attempts: int = 0,
        error: BaseException | None = None,
    ) -> None:
        super().__init__(message, error=error)
        self.status_code = status_code
        self.error_code = error_code
        self.attempts = attempts

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.error_code:
            parts.append(f"code={self.error_code}")
        if self.attempts:
            parts.append(f"attempts={self.attempts}")
        return " ".join(parts)


class InvalidCredentialError(BlobPipelineError):
    """Raised when a credential cannot be used to sign requests."""


class ConfigurationError(BlobPipelineError):
    """Raised when required settings are missing or malformed."""


class NetworkError(BlobPipelineError):
    """The request never produced an HTTP response."""

    retryable = True


class TryTimeoutError(BlobPipelineError):
    """A single attempt ran longer than the configured try timeout."""

    retryable = True


class OperationCanceledError(BlobPipelineError):
    """The caller's cancellation event was set while the operation was running."""


class ServerError(BlobPipelineError):
    """5xx or 429 from the service."""

    retryable = True


class ClientError(BlobPipelineError):
    """Any other unexpected status from the service. Never retried."""


class BlobNotFoundError(ClientError):
    """Raised when a requested blob does not exist."""


class ConditionNotMetError(ClientError):
    """Raised when an access condition (e.g. If-Match) fails."""


class StreamReadError(BlobPipelineError):
    """Reading a download body failed part way through."""


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


def error_from_http_error(error: HttpResponseError, attempts: int) -> BlobPipelineError:
    """Map an azure-core HttpResponseError to the matching error type."""
    status = error.status_code
    code = getattr(error, "error_code", None)
    # Storage error codes arrive as str-valued enums
    code = getattr(code, "value", code)
    message = error.message.splitlines()[0] if error.message else type(error).__name__

    if status is None:
        # The SDK raises a response-less HttpResponseError only after a body read failed.
        cls = StreamReadError
    elif is_retryable_status(status):
        cls = ServerError
    elif status == 404:
        cls = BlobNotFoundError
    elif status == 412:
        cls = ConditionNotMetError
    else:
        cls = ClientError
    return cls(message, status_code=status, error_code=code, attempts=attempts, error=error)
