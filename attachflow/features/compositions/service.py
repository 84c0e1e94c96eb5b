from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from attachflow.core.config import Settings, get_settings
from attachflow.features.attachments import (
    AllowList,
    AttachmentStatus,
    AttachmentStore,
    AttachmentValidationError,
    DeliveryGate,
    FileMeta,
    LocalFileStorage,
    NotificationBus,
    RetryOptions,
    RetryPolicy,
    UploadCoordinator,
    UploadSummary,
)
from attachflow.features.shared.ids import is_uuid, new_id
from attachflow.features.shared.text_sanitize import log_sanitization_stats, sanitize_text

from . import repo
from .errors import (
    CompositionNotFoundError,
    CompositionValidationError,
    ConversationNotFoundError,
    DeliveryBlockedError,
    DeliveryFailedError,
)
from .types import AddFilesResult, CompositionDetail, RejectedFile, SentMessage

logger = logging.getLogger(__name__)

_DELIVERED = frozenset({AttachmentStatus.SENDING, AttachmentStatus.SENT})


@dataclass
class Composition:
    id: str
    store: AttachmentStore
    coordinator: UploadCoordinator
    gate: DeliveryGate
    notifications: NotificationBus
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CompositionRegistry:
    """In-memory compositions, one attachment store each."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        allow_list: AllowList | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings or get_settings()
        self.allow_list = allow_list or AllowList.from_settings(self.settings)
        self.retry_policy = retry_policy or RetryPolicy(RetryOptions.from_settings(self.settings))
        self._compositions: dict[str, Composition] = {}

    def create(self) -> Composition:
        notifications = NotificationBus(buffer_size=self.settings.notification_buffer_size)
        store = AttachmentStore(self.allow_list)
        composition = Composition(
            id=new_id(),
            store=store,
            coordinator=UploadCoordinator(
                store,
                retry_policy=self.retry_policy,
                max_concurrency=self.settings.upload_max_concurrency,
                deadline_seconds=self.settings.upload_deadline_seconds,
                notifications=notifications,
            ),
            gate=DeliveryGate(store, notifications=notifications),
            notifications=notifications,
        )
        self._compositions[composition.id] = composition
        logger.debug("Created composition %s.", composition.id)
        return composition

    def get(self, composition_id: str) -> Composition:
        composition = self._compositions.get(composition_id)
        if composition is None:
            raise CompositionNotFoundError(f"Composition '{composition_id}' was not found.")
        return composition

    async def discard(
        self,
        composition_id: str,
        *,
        storage: LocalFileStorage | None = None,
    ) -> None:
        composition = self._compositions.pop(composition_id, None)
        if composition is None:
            raise CompositionNotFoundError(f"Composition '{composition_id}' was not found.")
        # Files of a message being or already sent belong to that message.
        orphaned = [
            item.storage_path
            for item in composition.store.list()
            if item.storage_path and item.status not in _DELIVERED
        ]
        composition.coordinator.abandon()
        composition.store.dispose()
        if storage is not None:
            for storage_path in orphaned:
                try:
                    await storage.delete(storage_path)
                except (OSError, ValueError):
                    logger.exception("Could not delete %s of composition %s.", storage_path, composition_id)
        logger.debug("Discarded composition %s (%d stored file(s)).", composition_id, len(orphaned))

    async def discard_all(self, *, storage: LocalFileStorage | None = None) -> int:
        ids = list(self._compositions)
        for composition_id in ids:
            await self.discard(composition_id, storage=storage)
        return len(ids)

    def __len__(self) -> int:
        return len(self._compositions)


@lru_cache
def get_composition_registry() -> CompositionRegistry:
    return CompositionRegistry()


@lru_cache
def get_storage() -> LocalFileStorage:
    return LocalFileStorage()


def describe(composition: Composition) -> CompositionDetail:
    attachments = composition.store.list()
    pending_delivery = [item.id for item in attachments if item.status != AttachmentStatus.SENT]
    return CompositionDetail(
        id=composition.id,
        created_at=composition.created_at,
        attachments=attachments,
        can_send=composition.gate.can_send(pending_delivery),
        in_flight=composition.coordinator.in_flight,
    )


def add_files(composition: Composition, files: Sequence[FileMeta]) -> AddFilesResult:
    added = []
    rejected: list[RejectedFile] = []
    for meta in files:
        try:
            added.append(composition.store.add(meta))
        except AttachmentValidationError as exc:
            logger.info("Rejected attachment %r: %s", meta.name, exc)
            composition.notifications.error(
                "File rejected.",
                description=str(exc),
            )
            rejected.append(RejectedFile(filename=exc.filename or meta.name, detail=str(exc)))
    return AddFilesResult(attachments=added, rejected=rejected)


async def remove_attachment(
    composition: Composition,
    attachment_id: str,
    *,
    storage: LocalFileStorage | None = None,
) -> None:
    removed = composition.store.remove(attachment_id)
    if storage is not None and removed.storage_path:
        await storage.delete(removed.storage_path)


async def upload_pending(composition: Composition, storage: LocalFileStorage) -> UploadSummary:
    pending = [
        item.id for item in composition.store.list() if item.status == AttachmentStatus.PENDING
    ]
    return await composition.coordinator.upload_all(
        pending,
        storage.upload,
        discard_fn=storage.delete,
    )


async def retry_attachment(
    composition: Composition,
    attachment_id: str,
    storage: LocalFileStorage,
) -> UploadSummary:
    return await composition.coordinator.retry(
        attachment_id,
        storage.upload,
        discard_fn=storage.delete,
    )


async def send_composition(
    session: AsyncSession,
    composition: Composition,
    *,
    content: str,
    conversation_id: str | None = None,
) -> SentMessage:
    clean_content, stats = sanitize_text(content or "", strip=True)
    log_sanitization_stats(logger, location="compositions.send.content", stats=stats)

    attachments = [
        item for item in composition.store.list() if item.status != AttachmentStatus.SENT
    ]
    if not clean_content and not attachments:
        raise CompositionValidationError("A message needs text or at least one attachment.")

    if conversation_id is not None and not is_uuid(conversation_id):
        raise CompositionValidationError("Invalid conversation_id.")

    attachment_ids = [item.id for item in attachments]

    failures: list[Exception] = []

    async def _post(_storage_paths: list[str]):
        try:
            return await repo.save_message_with_attachments(
                session,
                conversation_id=conversation_id,
                content=clean_content,
                attachments=[composition.store.require(item_id) for item_id in attachment_ids],
            )
        except Exception as exc:
            failures.append(exc)
            await session.rollback()
            raise

    result = await composition.gate.commit_send(attachment_ids, _post)
    if result.blocked_ids:
        raise DeliveryBlockedError(result.blocked_ids)
    if not result.ok:
        if failures and isinstance(failures[-1], ConversationNotFoundError):
            raise failures[-1]
        raise DeliveryFailedError(result.error or "Send failed.")

    message = result.value
    storage_paths = [item.storage_path or "" for item in attachments]
    if not composition.store.disposed:
        composition.store.clear_sent()
    return SentMessage(
        message_id=str(message.id),
        conversation_id=str(message.conversation_id),
        content=message.content,
        attachment_ids=attachment_ids,
        storage_paths=storage_paths,
        created_at=message.created_at,
    )
