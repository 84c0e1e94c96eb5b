from __future__ import annotations


class CompositionsDomainError(Exception):
    """Base exception for composition (message / form draft) operations."""


class CompositionNotFoundError(CompositionsDomainError):
    pass


class ConversationNotFoundError(CompositionsDomainError):
    pass


class CompositionValidationError(CompositionsDomainError):
    pass


class DeliveryBlockedError(CompositionsDomainError):
    def __init__(self, blocked_ids: list[str]):
        super().__init__(
            f"Attachment(s) not ready to send: {', '.join(blocked_ids)}."
        )
        self.blocked_ids = blocked_ids


class DeliveryFailedError(CompositionsDomainError):
    pass
