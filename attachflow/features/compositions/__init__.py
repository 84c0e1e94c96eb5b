from __future__ import annotations

from .errors import (
    CompositionNotFoundError,
    CompositionsDomainError,
    CompositionValidationError,
    ConversationNotFoundError,
    DeliveryBlockedError,
    DeliveryFailedError,
)
from .service import (
    Composition,
    CompositionRegistry,
    add_files,
    describe,
    get_composition_registry,
    get_storage,
    remove_attachment,
    retry_attachment,
    send_composition,
    upload_pending,
)
from .types import AddFilesResult, CompositionDetail, SendInput, SentMessage

__all__ = [
    "AddFilesResult",
    "Composition",
    "CompositionDetail",
    "CompositionNotFoundError",
    "CompositionRegistry",
    "CompositionValidationError",
    "CompositionsDomainError",
    "ConversationNotFoundError",
    "DeliveryBlockedError",
    "DeliveryFailedError",
    "SendInput",
    "SentMessage",
    "add_files",
    "describe",
    "get_composition_registry",
    "get_storage",
    "remove_attachment",
    "retry_attachment",
    "send_composition",
    "upload_pending",
]
