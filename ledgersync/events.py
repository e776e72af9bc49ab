"""Subscribe/unsubscribe event stream for sync notifications."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .clock import now_ms

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Kinds of events emitted by the sync engine."""

    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CONFLICT_DETECTED = "conflict_detected"
    OPERATION_FAILED = "operation_failed"
    OPERATION_DROPPED = "operation_dropped"


@dataclass
class SyncEvent:
    """A single notification delivered to subscribers."""

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "timestamp": self.timestamp, **self.payload}


EventListener = Callable[[SyncEvent], None]


class EventEmitter:
    """Delivers events to listeners in subscription order.

    A listener that raises is logged and skipped; delivery continues with the
    next listener. Listeners removed while an event is being delivered may or
    may not receive it.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that unsubscribes the listener.
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: EventType, **payload: Any) -> SyncEvent:
        """Build an event and deliver it to every current listener."""
        event = SyncEvent(type=event_type, payload=payload)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event_type.value}: {e}")

        return event

    def clear(self) -> None:
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
