"""
Option and result types used by the blob handles.

The handles translate these into keyword arguments of the
azure-storage-blob clients, so callers never import SDK models directly.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from azure.storage.blob import ContentSettings, StandardBlobTier


def redact_url(url: str) -> str:
    """Hide a SAS signature if one is present in the query string."""
    head, sep, query = url.partition("?")
    if not sep:
        return url
    params = []
    for param in query.split("&"):
        name, eq, _ = param.partition("=")
        if eq and name.lower() == "sig":
            param = f"{name}=REDACTED"
        params.append(param)
    return f"{head}?{'&'.join(params)}"


class AccessTier(Enum):
    NONE = ""
    HOT = "Hot"
    COOL = "Cool"
    ARCHIVE = "Archive"

    def to_blob_tier(self) -> StandardBlobTier | None:
        return StandardBlobTier(self.value) if self.value else None


class DeleteSnapshotsOption(Enum):
    NONE = ""  # Fails with 409 if the blob has snapshots
    INCLUDE = "include"  # Delete the blob and its snapshots
    ONLY = "only"  # Delete snapshots only, keep the base blob


@dataclass(frozen=True)
class BlobHTTPHeaders:
    content_type: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    content_disposition: str | None = None
    cache_control: str | None = None
    content_md5: bytes | None = None  # raw digest, sent base64 encoded

    def to_content_settings(self) -> ContentSettings:
        return ContentSettings(
            content_type=self.content_type,
            content_encoding=self.content_encoding,
            content_language=self.content_language,
            content_disposition=self.content_disposition,
            cache_control=self.cache_control,
            content_md5=bytearray(self.content_md5) if self.content_md5 else None,
        )


@dataclass(frozen=True)
class BlobAccessConditions:
    """Preconditions evaluated by the service."""

    if_match: str | None = None
    if_none_match: str | None = None
    if_modified_since: datetime | None = None
    if_unmodified_since: datetime | None = None

    def to_kwargs(self) -> dict[str, Any]:
        pairs = {
            "if_match": self.if_match,
            "if_none_match": self.if_none_match,
            "if_modified_since": self.if_modified_since,
            "if_unmodified_since": self.if_unmodified_since,
        }
        return {k: v for k, v in pairs.items() if v is not None}


@dataclass(frozen=True)
class UploadResult:
    etag: str | None
    last_modified: datetime | None
    content_md5: bytes | None
    request_id: str | None
    version: str | None
    attempts: int


@dataclass(frozen=True)
class DeleteResult:
    request_id: str | None
    version: str | None
    date: str | None
    attempts: int
