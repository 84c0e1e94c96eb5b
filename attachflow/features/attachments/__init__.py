from .delivery import DeliveryGate, DeliveryResult
from .errors import (
    AttachmentConflictError,
    AttachmentNotFoundError,
    AttachmentsDomainError,
    AttachmentValidationError,
    DeadlineExceededError,
    FetchError,
    InvalidTransitionError,
    RetryExhaustedError,
    StoreDisposedError,
)
from .notifications import NotificationBus, NotificationEvent
from .retry import FetchResult, RetryOptions, RetryPolicy, backoff_delay_ms, run_with_deadline
from .schemas import AllowList, Attachment, AttachmentChange, AttachmentStatus, FileMeta, StoredFile
from .state_machine import TRANSITIONS, can_transition, ensure_transition, is_terminal
from .storage import LocalFileStorage
from .store import AttachmentStore
from .uploads import UploadCoordinator, UploadSummary

__all__ = [
    "AllowList",
    "Attachment",
    "AttachmentChange",
    "AttachmentConflictError",
    "AttachmentNotFoundError",
    "AttachmentStatus",
    "AttachmentStore",
    "AttachmentValidationError",
    "AttachmentsDomainError",
    "DeadlineExceededError",
    "DeliveryGate",
    "DeliveryResult",
    "FetchError",
    "FetchResult",
    "FileMeta",
    "InvalidTransitionError",
    "LocalFileStorage",
    "NotificationBus",
    "NotificationEvent",
    "RetryExhaustedError",
    "RetryOptions",
    "RetryPolicy",
    "StoreDisposedError",
    "StoredFile",
    "TRANSITIONS",
    "UploadCoordinator",
    "UploadSummary",
    "backoff_delay_ms",
    "can_transition",
    "ensure_transition",
    "is_terminal",
    "run_with_deadline",
]
