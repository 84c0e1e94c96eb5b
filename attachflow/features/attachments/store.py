from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from attachflow.features.shared.ids import new_id

from .errors import (
    AttachmentConflictError,
    AttachmentNotFoundError,
    InvalidTransitionError,
    StoreDisposedError,
)
from .schemas import (
    AllowList,
    Attachment,
    AttachmentChange,
    AttachmentStatus,
    ChangeKind,
    FileMeta,
    StoredFile,
)
from .state_machine import can_transition
from .validation import file_extension, resolve_mime_type, validate_file

logger = logging.getLogger(__name__)

StoreObserver = Callable[[AttachmentChange], None]

_UNREMOVABLE = frozenset({AttachmentStatus.SENDING, AttachmentStatus.SENT})
_PATCHABLE_FIELDS = frozenset({"storage_path", "error_detail"})
_DEFAULT_ERROR_DETAIL = "Unknown error"


class AttachmentStore:
    """Authoritative set of attachments for one composition.

    Every mutation runs synchronously to completion and is followed by an
    ordered notification to observers. Raw file bytes are kept beside the
    snapshots and dropped once they are no longer needed.
    """

    def __init__(self, allow_list: AllowList | None = None):
        self.allow_list = allow_list or AllowList.from_settings()
        self._items: dict[str, Attachment] = {}
        self._sources: dict[str, bytes] = {}
        self._observers: list[StoreObserver] = []
        self._generation = 0
        self._disposed = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def disposed(self) -> bool:
        return self._disposed

    def is_current(self, generation: int) -> bool:
        return not self._disposed and generation == self._generation

    def subscribe(self, observer: StoreObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def add(self, meta: FileMeta) -> Attachment:
        self._ensure_alive()
        name, mime_type, extension = validate_file(meta, self.allow_list)
        attachment = Attachment(
            id=new_id(),
            name=name,
            size_bytes=meta.size_bytes,
            mime_type=mime_type,
            extension=extension,
            status=AttachmentStatus.PENDING,
            created_at=datetime.now(timezone.utc),
        )
        self._items[attachment.id] = attachment
        self._sources[attachment.id] = meta.source
        self._notify("added", attachment)
        return attachment

    def adopt(self, stored: StoredFile) -> Attachment:
        self._ensure_alive()
        attachment = Attachment(
            id=new_id(),
            name=stored.name,
            size_bytes=stored.size_bytes,
            mime_type=resolve_mime_type(stored.mime_type, stored.name),
            extension=file_extension(stored.name),
            status=AttachmentStatus.PROCESSING,
            storage_path=stored.storage_path,
            upload_progress=100,
            created_at=datetime.now(timezone.utc),
        )
        self._items[attachment.id] = attachment
        self._notify("added", attachment)
        return attachment

    def get(self, attachment_id: str) -> Attachment | None:
        return self._items.get(attachment_id)

    def require(self, attachment_id: str) -> Attachment:
        attachment = self._items.get(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(f"Attachment '{attachment_id}' was not found.")
        return attachment

    def list(self) -> list[Attachment]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def source_for(self, attachment_id: str) -> bytes:
        self.require(attachment_id)
        source = self._sources.get(attachment_id)
        if source is None:
            raise AttachmentConflictError(
                f"Attachment '{attachment_id}' no longer holds its file contents."
            )
        return source

    def remove(self, attachment_id: str) -> Attachment:
        self._ensure_alive()
        attachment = self.require(attachment_id)
        if attachment.status in _UNREMOVABLE:
            raise AttachmentConflictError(
                f"Attachment '{attachment_id}' is {attachment.status.value} and cannot be removed."
            )
        del self._items[attachment_id]
        self._sources.pop(attachment_id, None)
        self._notify("removed", attachment)
        return attachment

    def transition(self, attachment_id: str, to_status: AttachmentStatus, **patch: Any) -> Attachment:
        self._ensure_alive()
        current = self.require(attachment_id)
        if not can_transition(current.status, to_status):
            logger.warning(
                "Rejected transition of %s from %s to %s.",
                attachment_id,
                current.status.value,
                to_status.value,
            )
            raise InvalidTransitionError(attachment_id, current.status, to_status)

        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields {sorted(unknown)} cannot be set through a transition.")

        update: dict[str, Any] = {"status": to_status}
        if current.status == AttachmentStatus.ERROR:
            update["error_detail"] = None

        if to_status == AttachmentStatus.UPLOADING:
            update["upload_progress"] = 0
        elif to_status == AttachmentStatus.UPLOADED:
            storage_path = patch.get("storage_path") or current.storage_path
            if not storage_path:
                raise InvalidTransitionError(
                    attachment_id,
                    current.status,
                    to_status,
                    reason="A storage path is required.",
                )
            update["storage_path"] = storage_path
            update["upload_progress"] = 100
        elif to_status == AttachmentStatus.ERROR:
            update["error_detail"] = patch.get("error_detail") or _DEFAULT_ERROR_DETAIL

        updated = current.model_copy(update=update)
        self._items[attachment_id] = updated
        if to_status == AttachmentStatus.UPLOADED:
            self._sources.pop(attachment_id, None)
        self._notify("updated", updated)
        return updated

    def revert_send(self, attachment_id: str) -> Attachment:
        """Roll a ``sending`` attachment back to ``uploaded`` after the outer send failed."""
        self._ensure_alive()
        current = self.require(attachment_id)
        if current.status != AttachmentStatus.SENDING:
            raise InvalidTransitionError(
                attachment_id,
                current.status,
                AttachmentStatus.UPLOADED,
                reason="Only attachments being sent can be rolled back.",
            )
        updated = current.model_copy(update={"status": AttachmentStatus.UPLOADED})
        self._items[attachment_id] = updated
        self._notify("updated", updated)
        return updated

    def report_progress(self, attachment_id: str, percent: float) -> Attachment | None:
        self._ensure_alive()
        current = self.require(attachment_id)
        if current.status != AttachmentStatus.UPLOADING:
            return None
        value = max(0, min(100, int(percent)))
        if value == current.upload_progress:
            return current
        updated = current.model_copy(update={"upload_progress": value})
        self._items[attachment_id] = updated
        self._notify("updated", updated)
        return updated

    def record_retry(self, attachment_id: str) -> Attachment:
        self._ensure_alive()
        current = self.require(attachment_id)
        updated = current.model_copy(update={"retry_count": current.retry_count + 1})
        self._items[attachment_id] = updated
        self._notify("updated", updated)
        return updated

    def clear_sent(self) -> int:
        self._ensure_alive()
        sent = [item for item in self._items.values() if item.status == AttachmentStatus.SENT]
        for attachment in sent:
            del self._items[attachment.id]
            self._sources.pop(attachment.id, None)
            self._notify("removed", attachment)
        return len(sent)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._generation += 1
        self._items.clear()
        self._sources.clear()
        self._observers.clear()

    def _ensure_alive(self) -> None:
        if self._disposed:
            raise StoreDisposedError("Attachment store has been disposed.")

    def _notify(self, kind: ChangeKind, attachment: Attachment) -> None:
        change = AttachmentChange(kind=kind, attachment=attachment)
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception("Attachment store observer failed for %s.", attachment.id)
