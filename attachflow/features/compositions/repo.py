from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from attachflow.db.models import Attachment as AttachmentRow
from attachflow.db.models import Conversation, Message, MessageAttachment
from attachflow.features.attachments import Attachment
from attachflow.features.shared.ids import to_uuid

from .errors import ConversationNotFoundError

logger = logging.getLogger(__name__)

_TITLE_LENGTH = 80


def _derive_title(content: str) -> str | None:
    collapsed = " ".join(content.split())
    if not collapsed:
        return None
    if len(collapsed) <= _TITLE_LENGTH:
        return collapsed
    return f"{collapsed[: _TITLE_LENGTH - 3].rstrip()}..."


async def ensure_conversation(
    session: AsyncSession,
    conversation_id: UUID | str | None,
    *,
    title: str | None = None,
) -> Conversation:
    if conversation_id is not None:
        conversation = await session.get(Conversation, to_uuid(conversation_id))
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation '{conversation_id}' was not found.")
        return conversation

    conversation = Conversation(id=uuid4(), title=title)
    session.add(conversation)
    await session.flush()
    return conversation


async def save_message_with_attachments(
    session: AsyncSession,
    *,
    conversation_id: UUID | str | None,
    content: str,
    attachments: Sequence[Attachment],
) -> Message:
    conversation = await ensure_conversation(
        session,
        conversation_id,
        title=_derive_title(content),
    )
    now = datetime.now(timezone.utc)
    message = Message(
        id=uuid4(),
        conversation_id=conversation.id,
        role="user",
        content=content,
        created_at=now,
    )
    session.add(message)

    for position, item in enumerate(attachments):
        if not item.storage_path:
            raise ValueError(f"Attachment '{item.id}' has no storage path.")
        row = AttachmentRow(
            id=to_uuid(item.id),
            filename=item.name,
            content_type=item.mime_type,
            extension=item.extension,
            size_bytes=item.size_bytes,
            storage_path=item.storage_path,
            created_at=item.created_at,
        )
        session.add(row)
        session.add(
            MessageAttachment(
                message_id=message.id,
                attachment_id=row.id,
                position=position,
            )
        )

    conversation.updated_at = now
    await session.commit()
    logger.info(
        "Saved message %s in conversation %s with %d attachment(s).",
        message.id,
        conversation.id,
        len(attachments),
    )
    return message
