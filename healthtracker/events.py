"""In-process publish/subscribe for concurrency lifecycle events.

Events exist for observability only.  Publishing never raises and a bus with
no subscribers behaves exactly like one with many, so nothing on the update
path depends on who is listening.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from healthtracker.time_utils import isoformat_utc, utc_now

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    ATTEMPT = "attempt"
    SUCCESS = "success"
    CONFLICT = "conflict"
    RESOLUTION = "resolution"


@dataclass(frozen=True)
class ConcurrencyEvent:
    type: EventType
    resource: str
    details: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": isoformat_utc(self.timestamp),
            "resource": self.resource,
            "details": self.details,
        }


EventHandler = Callable[[ConcurrencyEvent], None]


def visit_resource(visit_id: str) -> str:
    """Return the resource identifier used for events about *visit_id*."""

    return f"doctor-visit-{visit_id}"


class EventBus:
    """Bounded event log with synchronous fan-out to subscribers."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._log: Deque[ConcurrencyEvent] = deque(maxlen=capacity)
        self._handlers: List[EventHandler] = []
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._log.maxlen or 0

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register *handler* and return a callable that removes it again."""

        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers.remove(handler)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, event: ConcurrencyEvent) -> None:
        with self._lock:
            self._log.append(event)
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "concurrency_event_handler_failed",
                    event_type=event.type.value,
                    resource=event.resource,
                )

    def emit(self, type: EventType, resource: str, details: str) -> ConcurrencyEvent:
        event = ConcurrencyEvent(type=EventType(type), resource=resource, details=details)
        self.publish(event)
        return event

    def recent(self, limit: Optional[int] = None) -> List[ConcurrencyEvent]:
        """Return retained events, newest first."""

        with self._lock:
            events = list(reversed(self._log))
        if limit is not None:
            return events[: max(0, limit)]
        return events

    def clear(self) -> None:
        with self._lock:
            self._log.clear()


__all__ = [
    "EventType",
    "ConcurrencyEvent",
    "EventBus",
    "EventHandler",
    "visit_resource",
]
