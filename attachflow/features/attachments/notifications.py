from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal

logger = logging.getLogger(__name__)

NotificationKind = Literal["success", "error", "warning", "info"]


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    message: str
    timestamp: datetime
    description: str | None = None
    attachment_id: str | None = None


NotificationSink = Callable[[NotificationEvent], None]


class NotificationBus:
    """User-facing events emitted by the pipeline.

    Sinks are called synchronously in subscription order; the most recent
    events are also buffered for consumers that poll.
    """

    def __init__(self, *, buffer_size: int = 100):
        self._sinks: list[NotificationSink] = []
        self._buffer: deque[NotificationEvent] = deque(maxlen=max(1, buffer_size))

    def subscribe(self, sink: NotificationSink) -> Callable[[], None]:
        self._sinks.append(sink)

        def _unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return _unsubscribe

    def emit(
        self,
        kind: NotificationKind,
        message: str,
        *,
        description: str | None = None,
        attachment_id: str | None = None,
    ) -> NotificationEvent:
        event = NotificationEvent(
            kind=kind,
            message=message,
            description=description,
            attachment_id=attachment_id,
            timestamp=datetime.now(timezone.utc),
        )
        self._buffer.append(event)
        for sink in list(self._sinks):
            try:
                sink(event)
            except Exception:
                logger.exception("Notification sink failed for %r.", message)
        return event

    def success(self, message: str, **kwargs) -> NotificationEvent:
        return self.emit("success", message, **kwargs)

    def error(self, message: str, **kwargs) -> NotificationEvent:
        return self.emit("error", message, **kwargs)

    def warning(self, message: str, **kwargs) -> NotificationEvent:
        return self.emit("warning", message, **kwargs)

    def info(self, message: str, **kwargs) -> NotificationEvent:
        return self.emit("info", message, **kwargs)

    def recent(self) -> list[NotificationEvent]:
        return list(self._buffer)

    def drain(self) -> list[NotificationEvent]:
        events = list(self._buffer)
        self._buffer.clear()
        return events
