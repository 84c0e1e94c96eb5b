from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from attachflow.features.attachments import Attachment
from attachflow.features.attachments.notifications import NotificationKind


class CompositionDetail(BaseModel):
    id: str
    created_at: datetime
    attachments: list[Attachment]
    can_send: bool
    in_flight: list[str] = Field(default_factory=list)


class RejectedFile(BaseModel):
    filename: str
    detail: str


class AddFilesResult(BaseModel):
    attachments: list[Attachment]
    rejected: list[RejectedFile] = Field(default_factory=list)


class UploadSummaryView(BaseModel):
    succeeded: list[str]
    failed: list[str]
    skipped: list[str]
    abandoned: list[str]


class SendInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str = Field(default="", max_length=20_000)
    conversation_id: str | None = None


class SentMessage(BaseModel):
    message_id: str
    conversation_id: str
    content: str
    attachment_ids: list[str]
    storage_paths: list[str]
    created_at: datetime


class NotificationView(BaseModel):
    kind: NotificationKind
    message: str
    description: str | None = None
    attachment_id: str | None = None
    timestamp: datetime
