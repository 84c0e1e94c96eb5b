from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import AttachmentStatus


class AttachmentsDomainError(Exception):
    """Base exception for attachment lifecycle operations."""


class AttachmentValidationError(AttachmentsDomainError):
    def __init__(self, message: str, *, filename: str | None = None):
        super().__init__(message)
        self.filename = filename


class AttachmentNotFoundError(AttachmentsDomainError):
    pass


class AttachmentConflictError(AttachmentsDomainError):
    pass


class StoreDisposedError(AttachmentsDomainError):
    pass


class InvalidTransitionError(AttachmentsDomainError):
    def __init__(
        self,
        attachment_id: str,
        from_status: AttachmentStatus,
        to_status: AttachmentStatus,
        *,
        reason: str | None = None,
    ):
        message = (
            f"Attachment '{attachment_id}' cannot move from "
            f"'{from_status.value}' to '{to_status.value}'."
        )
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.attachment_id = attachment_id
        self.from_status = from_status
        self.to_status = to_status


class RetryExhaustedError(AttachmentsDomainError):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class FetchError(AttachmentsDomainError):
    """Raised when a ``(data, error)`` style operation reports failure."""

    def __init__(self, message: str, *, error: object | None = None):
        super().__init__(message)
        self.error = error


class DeadlineExceededError(AttachmentsDomainError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Operation did not finish within {timeout_seconds:g}s.")
        self.timeout_seconds = timeout_seconds
