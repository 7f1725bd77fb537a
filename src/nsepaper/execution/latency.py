"""Simulated order latency: sampler, delay queue and percentile tracker."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from nsepaper.config_loader import LatencyConfig
from nsepaper.constants import LatencyDistribution
from nsepaper.errors import LatencyQueueStoppedError
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class LatencySimulator:
    """Draws per-order delays from the configured distribution."""

    def __init__(self, config: LatencyConfig | None = None, rng: random.Random | None = None) -> None:
        self.config = config or LatencyConfig()
        self.rng = rng or random.Random()

    def configure(self, **updates: Any) -> None:
        self.config = self.config.model_copy(update=updates)
        logger.debug(f"Latency configured: {self.config}")

    def sample(self, high_volatility: bool = False) -> int:
        """Delay in whole milliseconds; zero when latency is disabled."""
        cfg = self.config
        if not cfg.enabled:
            return 0

        low, high = float(cfg.min_ms), float(cfg.max_ms)
        mean = (low + high) / 2

        if cfg.distribution == LatencyDistribution.UNIFORM:
            value = low + self.rng.random() * (high - low)
        elif cfg.distribution == LatencyDistribution.EXPONENTIAL:
            value = -mean * math.log(self._nonzero_uniform())
        else:
            u1 = self._nonzero_uniform()
            u2 = self.rng.random()
            z = math.sqrt(-2 * math.log(u1)) * math.cos(2 * math.pi * u2)
            value = mean + z * (high - low) / 4

        value = max(low, min(high, value))
        if high_volatility:
            value += self.rng.random() * cfg.high_volatility_extra_ms
        return round(value)

    def _nonzero_uniform(self) -> float:
        u = self.rng.random()
        while u == 0:
            u = self.rng.random()
        return u


@dataclass
class _QueuedTask:
    task: Callable[[], Awaitable[Any]]
    latency_ms: int
    future: asyncio.Future[Any]


class LatencyQueue:
    """
    FIFO queue that runs each task after its injected delay.

    Tasks run one at a time in submission order. stop() and clear() reject
    everything still waiting with LatencyQueueStoppedError.
    """

    def __init__(self, simulator: LatencySimulator, clock: Clock | None = None) -> None:
        self.simulator = simulator
        self.clock = clock or SystemClock()
        self._queue: deque[_QueuedTask] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._stopped = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def enqueue(self, task: Callable[[], Awaitable[Any]], latency_ms: int | None = None) -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        if self._stopped:
            future.set_exception(LatencyQueueStoppedError("Queue stopped"))
            return future

        delay = self.simulator.sample() if latency_ms is None else latency_ms
        self._queue.append(_QueuedTask(task=task, latency_ms=delay, future=future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._process())
        return future

    async def _process(self) -> None:
        while self._queue and not self._stopped:
            item = self._queue.popleft()
            await self.clock.sleep(item.latency_ms / 1000)
            if item.future.done():
                continue
            if self._stopped:
                item.future.set_exception(LatencyQueueStoppedError("Queue stopped"))
                continue
            try:
                result = await item.task()
            except Exception as e:
                item.future.set_exception(e)
            else:
                item.future.set_result(result)

    def clear(self) -> None:
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(LatencyQueueStoppedError("Queue cleared"))

    def stop(self) -> None:
        self._stopped = True
        self.clear()
        logger.debug("Latency queue stopped")

    def resume(self) -> None:
        self._stopped = False
        if self._queue and (self._worker is None or self._worker.done()):
            self._worker = asyncio.get_running_loop().create_task(self._process())


@dataclass(frozen=True)
class LatencyStats:
    count: int = 0
    min: int = 0
    max: int = 0
    mean: float = 0.0
    median: int = 0
    p95: int = 0
    p99: int = 0


class LatencyTracker:
    """Bounded ring of latency samples with percentile reporting."""

    def __init__(self, max_samples: int = 10000) -> None:
        self._samples: deque[int] = deque(maxlen=max_samples)

    def __len__(self) -> int:
        return len(self._samples)

    def record(self, latency_ms: int) -> None:
        self._samples.append(latency_ms)

    def stats(self) -> LatencyStats:
        if not self._samples:
            return LatencyStats()
        ordered = sorted(self._samples)
        count = len(ordered)
        return LatencyStats(
            count=count,
            min=ordered[0],
            max=ordered[-1],
            mean=sum(ordered) / count,
            median=ordered[count // 2],
            p95=ordered[min(count - 1, int(count * 0.95))],
            p99=ordered[min(count - 1, int(count * 0.99))],
        )

    def clear(self) -> None:
        self._samples.clear()
