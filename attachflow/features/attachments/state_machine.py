from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from .errors import InvalidTransitionError
from .schemas import AttachmentStatus

_S = AttachmentStatus

TRANSITIONS: Mapping[AttachmentStatus, frozenset[AttachmentStatus]] = MappingProxyType(
    {
        _S.PENDING: frozenset({_S.UPLOADING, _S.ERROR}),
        _S.UPLOADING: frozenset({_S.UPLOADED, _S.ERROR}),
        _S.UPLOADED: frozenset({_S.SENDING, _S.ERROR}),
        _S.SENDING: frozenset({_S.SENT, _S.ERROR}),
        _S.SENT: frozenset(),
        _S.ERROR: frozenset({_S.PENDING, _S.UPLOADING}),
        _S.PROCESSING: frozenset({_S.UPLOADED, _S.ERROR}),
    }
)

INITIAL_STATUS = _S.PENDING


def allowed_targets(status: AttachmentStatus) -> frozenset[AttachmentStatus]:
    return TRANSITIONS.get(status, frozenset())


def can_transition(from_status: AttachmentStatus, to_status: AttachmentStatus) -> bool:
    return to_status in allowed_targets(from_status)


def is_terminal(status: AttachmentStatus) -> bool:
    return not allowed_targets(status)


def ensure_transition(
    attachment_id: str,
    from_status: AttachmentStatus,
    to_status: AttachmentStatus,
) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(attachment_id, from_status, to_status)
