"""Clocks and a fixed-cadence ticker."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from nsepaper.constants import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)


class Clock(ABC):
    """Source of wall-clock time and sleeping."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend for the given number of seconds."""

    def elapsed_ms(self, since: datetime) -> int:
        return int((self.now() - since).total_seconds() * 1000)


class SystemClock(Clock):
    """Real time in the exchange timezone."""

    def __init__(self, timezone: str = DEFAULT_TIMEZONE) -> None:
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SimulatedClock(Clock):
    """
    Manually advanced clock for deterministic tests and replays.

    sleep() moves virtual time forward instantly and yields once to the loop.
    """

    def __init__(self, start: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> None:
        self.tz = ZoneInfo(timezone)
        if start is None:
            start = datetime(2024, 1, 15, 10, 0, tzinfo=self.tz)
        elif start.tzinfo is None:
            start = start.replace(tzinfo=self.tz)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, *, milliseconds: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=self.tz)
        self._now = when

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)


class Ticker:
    """Invoke an async callback at a fixed interval on a clock."""

    def __init__(
        self,
        clock: Clock,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "ticker",
    ) -> None:
        self.clock = clock
        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.tick_count = 0
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        """Run one cycle; errors are logged so the loop keeps its cadence."""
        self.tick_count += 1
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"{self.name} cycle {self.tick_count} failed: {e}", exc_info=True)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            await self.clock.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"{self.name} started ({self.interval}s)")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug(f"{self.name} stopped after {self.tick_count} ticks")
