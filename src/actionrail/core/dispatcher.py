"""Event dispatcher owned by the orchestrator.

Subscribers register for a named event type (or ``*`` for everything) and
receive ``(event_type, data)``. Callbacks may be plain functions or
coroutines. A failing subscriber is logged and skipped; it never affects
the action that produced the event or the other subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger("actionrail.dispatcher")

EventCallback = Callable[[str, dict[str, Any]], Any]

ALL_EVENTS = "*"


class EventDispatcher:
    """Explicitly constructed pub/sub hub. There is no process-wide instance."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventCallback]] = {}

    def subscribe(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it again."""
        self._subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, callback)

        return unsubscribe

    def unsubscribe(self, event_type: str, callback: EventCallback) -> None:
        callbacks = self._subscribers.get(event_type)
        if not callbacks:
            return
        self._subscribers[event_type] = [c for c in callbacks if c is not callback]
        if not self._subscribers[event_type]:
            del self._subscribers[event_type]

    def subscriber_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(c) for c in self._subscribers.values())
        return len(self._subscribers.get(event_type, []))

    async def emit(self, event_type: str, data: dict[str, Any]) -> None:
        """Notify subscribers of ``event_type`` and wildcard subscribers."""
        callbacks = list(self._subscribers.get(event_type, []))
        if event_type != ALL_EVENTS:
            callbacks.extend(self._subscribers.get(ALL_EVENTS, []))
        for cb in callbacks:
            try:
                result = cb(event_type, data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.warning("Event subscriber error for %s", event_type, exc_info=True)
