"""Market-data transport interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable

from nsepaper.data.market_data import InstrumentTick
from nsepaper.events import EventBus, EventType

logger = logging.getLogger(__name__)

TickCallback = Callable[[InstrumentTick], Awaitable[None]]


class MarketDataFeed(ABC):
    """
    Abstract tick source.

    Subscriptions are remembered across disconnects so reconnect() restores
    them. Ticks may arrive out of order or not at all; consumers handle both.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.event_bus = event_bus
        self._tick_callbacks: list[TickCallback] = []
        self._subscriptions: set[int] = set()
        self._connected = False

    def add_tick_callback(self, callback: TickCallback) -> None:
        """Register callback for market data ticks."""
        self._tick_callbacks.append(callback)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> set[int]:
        return set(self._subscriptions)

    async def subscribe(self, tokens: Iterable[int]) -> None:
        new = set(tokens) - self._subscriptions
        if not new:
            return
        if self._connected:
            await self._subscribe_tokens(sorted(new))
        self._subscriptions |= new
        logger.debug(f"Subscribed to {len(new)} token(s), {len(self._subscriptions)} total")

    async def unsubscribe(self, tokens: Iterable[int]) -> None:
        removed = set(tokens) & self._subscriptions
        if not removed:
            return
        if self._connected:
            await self._unsubscribe_tokens(sorted(removed))
        self._subscriptions -= removed

    async def reconnect(self) -> None:
        """Drop and re-establish the connection, then restore every subscription."""
        logger.warning("Reconnecting market data feed")
        await self.disconnect()
        await self.connect()
        if self._subscriptions:
            await self._subscribe_tokens(sorted(self._subscriptions))
            logger.info(f"Resubscribed {len(self._subscriptions)} token(s)")

    async def _dispatch(self, tick: InstrumentTick) -> None:
        for callback in self._tick_callbacks:
            try:
                await callback(tick)
            except Exception as e:
                logger.error(f"Tick callback failed for {tick.symbol}: {e}", exc_info=True)
                self._publish(EventType.FEED_ERROR, {"error": str(e), "symbol": tick.symbol})

    def _set_connected(self, connected: bool) -> None:
        self._connected = connected
        self._publish(EventType.FEED_CONNECTED if connected else EventType.FEED_DISCONNECTED, {})

    def _publish(self, event_type: EventType, payload: dict[str, object]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, payload)

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the data source."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect."""

    @abstractmethod
    async def _subscribe_tokens(self, tokens: list[int]) -> None:
        """Send a subscription request for tokens."""

    @abstractmethod
    async def _unsubscribe_tokens(self, tokens: list[int]) -> None:
        """Send an unsubscription request for tokens."""
