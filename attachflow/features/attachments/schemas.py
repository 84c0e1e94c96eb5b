from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from attachflow.core.config import Settings, get_settings


class AttachmentStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    SENDING = "sending"
    SENT = "sent"
    PROCESSING = "processing"
    ERROR = "error"


class Attachment(BaseModel):
    """Read-only snapshot of one attachment; the store replaces it on every change."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    size_bytes: int
    mime_type: str
    extension: str
    status: AttachmentStatus = AttachmentStatus.PENDING
    storage_path: str | None = None
    upload_progress: int = Field(default=0, ge=0, le=100)
    retry_count: int = 0
    error_detail: str | None = None
    created_at: datetime


@dataclass(frozen=True)
class FileMeta:
    name: str
    size_bytes: int
    mime_type: str
    source: bytes

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str = "") -> FileMeta:
        return cls(name=name, size_bytes=len(data), mime_type=mime_type, source=data)


@dataclass(frozen=True)
class StoredFile:
    """A file that already lives in storage, e.g. one still being parsed server-side."""

    name: str
    size_bytes: int
    mime_type: str
    storage_path: str


@dataclass(frozen=True)
class AllowList:
    allowed_mime_types: frozenset[str]
    allowed_extensions: frozenset[str]
    max_size_bytes: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AllowList:
        settings = settings or get_settings()
        return cls(
            allowed_mime_types=settings.upload_allowed_mime_type_set,
            allowed_extensions=settings.upload_allowed_extension_set,
            max_size_bytes=settings.upload_max_size_bytes,
        )


ChangeKind = Literal["added", "updated", "removed"]


@dataclass(frozen=True)
class AttachmentChange:
    kind: ChangeKind
    attachment: Attachment
