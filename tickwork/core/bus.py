"""
Tickwork Event Bus — publish/subscribe for scheduler events.

The engine and dispatcher publish; the event logger and any status
surface subscribe. A failing subscriber never affects the scheduler.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Awaitable, Callable

from tickwork.core.events import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Publish/subscribe event bus.

    Usage:
        bus = EventBus()

        bus.on("job:completed", on_done)
        bus.on("job:*", on_any_job_event)
        bus.on("*", event_logger.handle)

        await bus.emit(Event(type="job:completed", data={...}))
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to an event type. Supports wildcards: 'job:*', '*'."""
        self._subscribers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe from an event type."""
        handlers = [h for h in self._subscribers.get(event_type, []) if h is not handler]
        if handlers:
            self._subscribers[event_type] = handlers
        else:
            self._subscribers.pop(event_type, None)

    async def emit(self, event: Event) -> Event:
        """
        Deliver an event to every matching subscriber concurrently.

        Subscriber exceptions are logged and swallowed.
        """
        handlers = self._find_handlers(event.type)
        if handlers:
            results = await asyncio.gather(
                *(h(event) for h in handlers),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        f"Subscriber error for {event.type}: {result}",
                        exc_info=result,
                    )
        return event

    def emit_nowait(self, event: Event) -> None:
        """Fire-and-forget emit. Silently skipped when no loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop for nowait emit: {event.type}")
            return
        loop.create_task(self.emit(event))

    def _find_handlers(self, event_type: str) -> list[EventHandler]:
        handlers: list[EventHandler] = []
        for pattern, subs in self._subscribers.items():
            if pattern == event_type or pattern == "*":
                handlers.extend(subs)
            elif "*" in pattern and fnmatch.fnmatch(event_type, pattern):
                handlers.extend(subs)
        return handlers

    @property
    def subscriber_count(self) -> int:
        """Total number of subscriptions (for debugging)."""
        return sum(len(subs) for subs in self._subscribers.values())
