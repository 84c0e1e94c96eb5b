from __future__ import annotations

from uuid import UUID, uuid4


def new_id() -> str:
    return str(uuid4())


def to_uuid(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except (TypeError, ValueError):
        return False
    return True
