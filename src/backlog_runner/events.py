"""Run events: an ordered, bounded, subscribable stream of engine activity."""

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    EventKind.INFO: logging.INFO,
    EventKind.SUCCESS: logging.INFO,
    EventKind.WARNING: logging.WARNING,
    EventKind.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class RunEvent:
    kind: EventKind
    message: str
    source: str = "engine"
    task_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "message": self.message,
            "source": self.source,
            "task_id": self.task_id,
        }


Subscriber = Callable[[RunEvent], None]


class EventLog:
    """Bounded event channel shared by every engine component.

    Events are retained oldest-first up to `maxlen`, mirrored to `logging`,
    and pushed to subscribers synchronously in emission order.
    """

    def __init__(self, maxlen: int = 50):
        self._events: deque[RunEvent] = deque(maxlen=maxlen)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def emit(
        self,
        kind: EventKind | str,
        message: str,
        source: str = "engine",
        task_id: str | None = None,
    ) -> RunEvent:
        event = RunEvent(EventKind(kind), message, source=source, task_id=task_id)
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        logging.getLogger(f"backlog_runner.{source}").log(_LOG_LEVELS[event.kind], message)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber %r failed", callback)
        return event

    def info(self, message: str, **kwargs) -> RunEvent:
        return self.emit(EventKind.INFO, message, **kwargs)

    def success(self, message: str, **kwargs) -> RunEvent:
        return self.emit(EventKind.SUCCESS, message, **kwargs)

    def warning(self, message: str, **kwargs) -> RunEvent:
        return self.emit(EventKind.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> RunEvent:
        return self.emit(EventKind.ERROR, message, **kwargs)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def recent(self, limit: int | None = None) -> list[RunEvent]:
        with self._lock:
            events = list(self._events)
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events

    def clear(self):
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
