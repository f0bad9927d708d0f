"""In-process event bus for lifecycle notifications.

Delivery is synchronous and fire-and-forget: ``emit`` calls every matching
handler in subscription order, logs any handler exception and carries on.
Nothing is persisted; a short per-event history is kept for observers that
attach late (dashboards, tool-call responders).
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventName = Literal[
    "agent:spawned",
    "agent:log",
    "agent:completed",
    "agent:killed",
    "agent:reaped",
    "agent:rejected",
    "task:updated",
]

EVENT_NAMES: tuple[str, ...] = (
    "agent:spawned",
    "agent:log",
    "agent:completed",
    "agent:killed",
    "agent:reaped",
    "agent:rejected",
    "task:updated",
)

HISTORY_LIMIT = 100


@dataclass(frozen=True)
class Event:
    name: str
    task_id: str | None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[Event], None]


@dataclass(eq=False)
class _Subscription:
    event: str
    handler: Handler
    task_id: str | None


class EventBus:
    """Synchronous publish/subscribe keyed by event name and optional task id."""

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._subscriptions: list[_Subscription] = []
        self._history: dict[str, deque[Event]] = {}
        self._history_limit = history_limit
        self._lock = threading.RLock()

    def on(self, event: str, handler: Handler, task_id: str | None = None) -> Callable[[], None]:
        """Subscribe ``handler``; returns a function that unsubscribes it.

        With ``task_id`` the handler only sees events for that task.
        """
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event {event!r}")
        subscription = _Subscription(event, handler, task_id)
        with self._lock:
            self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return _unsubscribe

    def once(self, event: str, handler: Handler, task_id: str | None = None) -> Callable[[], None]:
        unsubscribe: Callable[[], None] | None = None

        def _wrapper(evt: Event) -> None:
            if unsubscribe is not None:
                unsubscribe()
            handler(evt)

        unsubscribe = self.on(event, _wrapper, task_id)
        return unsubscribe

    def emit(self, event: str, task_id: str | None = None, **data: Any) -> Event:
        evt = Event(name=event, task_id=task_id, data=data)
        with self._lock:
            self._history.setdefault(event, deque(maxlen=self._history_limit)).append(evt)
            targets = [
                s for s in self._subscriptions if s.event == event and (s.task_id is None or s.task_id == task_id)
            ]
        for subscription in targets:
            try:
                subscription.handler(evt)
            except Exception:
                logger.exception("Handler for %s raised", event)
        return evt

    def get_history(self, event: str, task_id: str | None = None) -> list[Event]:
        with self._lock:
            events = list(self._history.get(event, ()))
        if task_id is not None:
            events = [e for e in events if e.task_id == task_id]
        return events

    def clear(self) -> None:
        """Drop all subscriptions and history."""
        with self._lock:
            self._subscriptions.clear()
            self._history.clear()

    def subscription_count(self, event: str | None = None) -> int:
        with self._lock:
            if event is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions if s.event == event)
