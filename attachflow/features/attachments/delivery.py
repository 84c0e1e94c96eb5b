from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from .notifications import NotificationBus
from .schemas import AttachmentStatus
from .store import AttachmentStore

logger = logging.getLogger(__name__)

SendFn = Callable[[list[str]], Awaitable[Any]]


@dataclass
class DeliveryResult:
    ok: bool
    attachment_ids: list[str] = field(default_factory=list)
    blocked_ids: list[str] = field(default_factory=list)
    error: str | None = None
    value: Any = None


class DeliveryGate:
    """Two-phase hand-off of uploaded attachments to the outer send.

    Attachments move to ``sending`` before the send runs and only reach
    ``sent`` once it succeeds; a failed send puts them back to ``uploaded``.
    """

    def __init__(self, store: AttachmentStore, *, notifications: NotificationBus | None = None):
        self.store = store
        self.notifications = notifications or NotificationBus()

    def blocked_ids(self, attachment_ids: Sequence[str]) -> list[str]:
        blocked: list[str] = []
        for attachment_id in attachment_ids:
            attachment = self.store.get(attachment_id)
            if attachment is None or attachment.status != AttachmentStatus.UPLOADED:
                blocked.append(attachment_id)
        return blocked

    def can_send(self, attachment_ids: Sequence[str]) -> bool:
        return not self.blocked_ids(attachment_ids)

    async def commit_send(self, attachment_ids: Sequence[str], send_fn: SendFn) -> DeliveryResult:
        ids = list(dict.fromkeys(attachment_ids))
        blocked = self.blocked_ids(ids)
        if blocked:
            self.notifications.warning(
                "Wait for all attachments to finish uploading before sending.",
                description=", ".join(blocked),
            )
            return DeliveryResult(ok=False, attachment_ids=ids, blocked_ids=blocked)

        generation = self.store.generation
        storage_paths: list[str] = []
        for attachment_id in ids:
            attachment = self.store.transition(attachment_id, AttachmentStatus.SENDING)
            storage_paths.append(attachment.storage_path or "")

        try:
            value = await send_fn(storage_paths)
        except asyncio.CancelledError:
            self._revert(ids, generation)
            raise
        except Exception as exc:
            logger.warning("Send with %d attachment(s) failed: %s", len(ids), exc)
            if self._revert(ids, generation):
                self.notifications.error(
                    "Message could not be sent.",
                    description=str(exc) or type(exc).__name__,
                )
            return DeliveryResult(ok=False, attachment_ids=ids, error=str(exc) or type(exc).__name__)

        if not self.store.is_current(generation):
            logger.info("Composition was discarded during send; skipping final transitions.")
            return DeliveryResult(ok=True, attachment_ids=ids, value=value)

        for attachment_id in ids:
            if self.store.get(attachment_id) is not None:
                self.store.transition(attachment_id, AttachmentStatus.SENT)
        self.notifications.success(
            "Message sent." if not ids else f"Message sent with {len(ids)} attachment(s)."
        )
        return DeliveryResult(ok=True, attachment_ids=ids, value=value)

    def _revert(self, attachment_ids: list[str], generation: int) -> bool:
        if not self.store.is_current(generation):
            return False
        for attachment_id in attachment_ids:
            attachment = self.store.get(attachment_id)
            if attachment is not None and attachment.status == AttachmentStatus.SENDING:
                self.store.revert_send(attachment_id)
        return True
