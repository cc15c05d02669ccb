"""In-process event bus for routing, execution and deliberation notifications."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List
import logging
import time

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class Event:
    """A single published notification."""

    name: str
    ts: float
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Subscriber = Callable[[Event], None]


class EventBus:
    """Callback registry with a bounded history of published events.

    Args:
        history_size: Number of recent events kept for ``recent()``.
        clock: Time source, injectable for tests.
    """

    def __init__(self, history_size: int = 200, clock: Callable[[], float] = time.time) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._history: deque[Event] = deque(maxlen=history_size)
        self._clock = clock

    def subscribe(self, name: str, callback: Subscriber) -> Subscriber:
        self._subscribers.setdefault(name, []).append(callback)
        return callback

    def unsubscribe(self, name: str, callback: Subscriber) -> bool:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def publish(self, name: str, **data: Any) -> Event:
        event = Event(name=name, ts=self._clock(), data=data)
        self._history.append(event)
        listeners = list(self._subscribers.get(name, [])) + list(self._subscribers.get(WILDCARD, []))
        for callback in listeners:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", name)
        return event

    def recent(self, limit: int | None = None, name: str | None = None) -> List[Event]:
        events = [e for e in self._history if name is None or e.name == name]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def subscriber_count(self, name: str | None = None) -> int:
        if name is not None:
            return len(self._subscribers.get(name, []))
        return sum(len(v) for v in self._subscribers.values())
