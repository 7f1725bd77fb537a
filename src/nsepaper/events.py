"""Typed in-process event bus with bounded history."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Named events emitted by the simulation core."""

    TICK = "tick"
    ORDER_CREATED = "order:created"
    ORDER_FILLED = "order:filled"
    ORDER_PARTIAL = "order:partial"
    ORDER_CANCELLED = "order:cancelled"
    ORDER_REJECTED = "order:rejected"
    POSITION_OPENED = "position:opened"
    POSITION_UPDATED = "position:updated"
    POSITION_CLOSED = "position:closed"
    STRATEGY_CREATED = "strategy:created"
    STRATEGY_UPDATED = "strategy:updated"
    STRATEGY_CLOSED = "strategy:closed"
    MARGIN_WARNING = "margin:warning"
    MARGIN_BREACH = "margin:breach"
    KILL_SWITCH_TRIGGERED = "killswitch:triggered"
    FEED_CONNECTED = "feed:connected"
    FEED_DISCONNECTED = "feed:disconnected"
    FEED_ERROR = "feed:error"
    DAILY_RESET = "daily:reset"


@dataclass(frozen=True)
class Event:
    """One published event."""

    type: EventType
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """
    Publish/subscribe hub for core events.

    Sync handlers run inline; coroutine handlers are scheduled as tasks on the
    running loop so that publishers never wait on subscribers. A handler that
    raises is logged and does not stop delivery to the others.
    """

    def __init__(
        self,
        history_size: int = 1000,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._handlers: dict[EventType, list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._history: deque[Event] = deque(maxlen=history_size)
        self._now = now or datetime.now
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler that receives every event."""
        self._wildcard.append(handler)

    def unsubscribe(self, event_type: EventType | None, handler: Handler) -> bool:
        """Remove a handler; event_type None removes a wildcard handler."""
        handlers = self._wildcard if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def publish(self, event_type: EventType, payload: dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, payload=payload or {}, timestamp=self._now())
        self._history.append(event)

        for handler in [*self._handlers.get(event_type, []), *self._wildcard]:
            self._dispatch(handler, event)
        return event

    def _dispatch(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
        except Exception as e:
            logger.error(f"Event handler failed for {event.type.value}: {e}")
            return

        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop for async handler of {event.type.value}; dropped")
            if inspect.iscoroutine(result):
                result.close()
            return

        task = loop.create_task(self._guard(result, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(awaitable: Awaitable[None], event: Event) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error(f"Async event handler failed for {event.type.value}: {e}")

    def history(self, event_type: EventType | None = None, limit: int = 100) -> list[Event]:
        """Most recent events, oldest first, optionally filtered by type."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:] if limit > 0 else []

    def clear_history(self) -> None:
        self._history.clear()

    def listener_count(self, event_type: EventType | None = None) -> int:
        if event_type is None:
            return len(self._wildcard)
        return len(self._handlers.get(event_type, []))

    async def wait_for(self, event_type: EventType, timeout: float | None = None) -> Event:
        """Wait for the next event of a type; raises asyncio.TimeoutError on timeout."""
        future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()

        def _resolve(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        self.subscribe(event_type, _resolve)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.unsubscribe(event_type, _resolve)

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
