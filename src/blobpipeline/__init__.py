"""
blobpipeline
============

Async blob-storage client built on an explicit request pipeline:
retry -> storage headers and signing -> request logging -> pluggable
transport, running inside the azure-storage-blob clients.

Main entry points:
- new_pipeline, PipelineOptions: build the shared request pipeline
- RetryOptions, RequestLogOptions, TransportOptions: its knobs
- HttpSender, AiohttpSender: transport strategy and its default
- new_service_handle: service -> container -> blob handles
- RetryReader: download body that resumes after partial reads
- BlobPipelineError and subclasses: errors

Example:
    from azure.core.credentials import AzureNamedKeyCredential
    from blobpipeline import PipelineOptions, RetryOptions, new_pipeline, new_service_handle

    credential = AzureNamedKeyCredential("account", "base64key==")
    async with new_pipeline(credential, PipelineOptions(retry=RetryOptions(max_tries=3))) as pipeline:
        blob = (
            new_service_handle(pipeline, "https://account.blob.core.windows.net/")
            .get_container("container")
            .get_blob("test.txt")
        )
        await blob.upload(b"hello")
        download = await blob.download()
        async with download.body() as body:
            data = await body.readall()
        await blob.delete()
"""

import importlib.metadata

try:
    __version__ = importlib.metadata.version(__name__)
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

from .errors import (
    BlobNotFoundError,
    BlobPipelineError,
    ClientError,
    ConditionNotMetError,
    ConfigurationError,
    InvalidCredentialError,
    NetworkError,
    OperationCanceledError,
    ServerError,
    StreamReadError,
    TryTimeoutError,
)
from .handles import (
    BlobHandle,
    ContainerHandle,
    DownloadResponse,
    ServiceHandle,
    new_service_handle,
)
from .models import (
    AccessTier,
    BlobAccessConditions,
    BlobHTTPHeaders,
    DeleteResult,
    DeleteSnapshotsOption,
    UploadResult,
)
from .pipeline import (
    DownloadOptions,
    OperationContext,
    Pipeline,
    PipelineOptions,
    RequestLogOptions,
    RequestLogPolicy,
    RetryOptions,
    RetryPolicy,
    RetryPolicyType,
    TelemetryOptions,
    new_pipeline,
    wait_or_cancel,
)
from .retry_reader import RetryReader, RetryReaderOptions
from .transport import AiohttpSender, HttpSender, TransportOptions

__all__ = [
    "BlobPipelineError",
    "InvalidCredentialError",
    "ConfigurationError",
    "NetworkError",
    "TryTimeoutError",
    "OperationCanceledError",
    "ServerError",
    "ClientError",
    "BlobNotFoundError",
    "ConditionNotMetError",
    "StreamReadError",
    "ServiceHandle",
    "ContainerHandle",
    "BlobHandle",
    "DownloadResponse",
    "new_service_handle",
    "AccessTier",
    "BlobAccessConditions",
    "BlobHTTPHeaders",
    "DeleteResult",
    "DeleteSnapshotsOption",
    "UploadResult",
    "DownloadOptions",
    "OperationContext",
    "Pipeline",
    "PipelineOptions",
    "RequestLogOptions",
    "RequestLogPolicy",
    "RetryOptions",
    "RetryPolicy",
    "RetryPolicyType",
    "TelemetryOptions",
    "new_pipeline",
    "wait_or_cancel",
    "RetryReader",
    "RetryReaderOptions",
    "AiohttpSender",
    "HttpSender",
    "TransportOptions",
]
