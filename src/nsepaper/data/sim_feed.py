"""Simulation data feed."""

from __future__ import annotations

import logging
import math
import random
from decimal import Decimal

from nsepaper.config_loader import FeedConfig, PricingConfig
from nsepaper.constants import InstrumentType, Underlying
from nsepaper.data.feed import MarketDataFeed
from nsepaper.data.instruments import Instrument, InstrumentRegistry
from nsepaper.data.market_data import DepthLevel, InstrumentTick, OrderBookDepth
from nsepaper.events import EventBus
from nsepaper.numeric import round_to_tick
from nsepaper.pricing.black_scholes import BSParams, option_price
from nsepaper.time.clock import Clock, SystemClock
from nsepaper.time.session_manager import SessionManager

logger = logging.getLogger(__name__)

DEPTH_LEVELS = 5
HALF_SPREAD_PCT = Decimal("0.0025")
# NSE session: 375 minutes a day, 252 days a year
SECONDS_PER_YEAR = 252 * 375 * 60
SMILE_SLOPE = Decimal("2")


class SimDataFeed(MarketDataFeed):
    """
    Generates synthetic market data for simulation/dry-run.

    Spot follows a seeded geometric random walk per underlying. Options are
    priced with Black-Scholes at a smile-adjusted IV and quoted with a
    synthetic spread, five-level depth, cumulative volume and OI.
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        session: SessionManager,
        config: FeedConfig | None = None,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        super().__init__(event_bus)
        self.registry = registry
        self.session = session
        self.config = config or FeedConfig()
        self.pricing = pricing or PricingConfig()
        self.clock = clock or SystemClock()

        self._rng = random.Random(self.config.seed)
        self.spots: dict[Underlying, Decimal] = dict(self.config.starting_spots)
        self._volume: dict[int, int] = {}
        self._oi: dict[int, int] = {}
        self._running = False

    async def connect(self) -> None:
        self._set_connected(True)
        logger.info(f"SimDataFeed connected for {[u.value for u in self.spots]}")

    async def disconnect(self) -> None:
        self._running = False
        self._set_connected(False)
        logger.info("SimDataFeed disconnected")

    async def _subscribe_tokens(self, tokens: list[int]) -> None:
        logger.debug(f"SimDataFeed subscribing {len(tokens)} token(s)")

    async def _unsubscribe_tokens(self, tokens: list[int]) -> None:
        logger.debug(f"SimDataFeed unsubscribing {len(tokens)} token(s)")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _step_spot(self, underlying: Underlying) -> Decimal:
        dt = self.config.tick_interval_ms / 1000 / SECONDS_PER_YEAR
        sigma = float(self.config.annual_volatility) * math.sqrt(dt)
        ret = self._rng.gauss(0.0, sigma)
        price = self.spots[underlying] * Decimal(str(math.exp(ret)))
        self.spots[underlying] = round_to_tick(price, self.registry.tick_size(underlying))
        return self.spots[underlying]

    def _theoretical_price(self, instrument: Instrument, spot: Decimal) -> Decimal:
        if instrument.instrument_type == InstrumentType.SPOT:
            return spot
        assert instrument.expiry is not None
        t = self.session.time_to_expiry_years(instrument.expiry)

        if instrument.instrument_type == InstrumentType.FUT:
            carry = Decimal(str(math.exp(float(self.pricing.risk_free_rate * t))))
            return spot * carry

        assert instrument.strike is not None
        distance = abs(instrument.strike - spot) / spot
        iv = self.config.base_iv * (1 + SMILE_SLOPE * distance)
        return option_price(
            BSParams(
                spot=spot,
                strike=instrument.strike,
                time_to_expiry=t,
                volatility=iv,
                option_type=instrument.instrument_type,
                risk_free_rate=self.pricing.risk_free_rate,
            )
        )

    def _depth(self, instrument: Instrument, bid: Decimal, ask: Decimal) -> OrderBookDepth:
        tick = instrument.tick_size
        buy = []
        sell = []
        for level in range(DEPTH_LEVELS):
            buy_price = bid - tick * level
            if buy_price > 0:
                buy.append(
                    DepthLevel(buy_price, instrument.lot_size * self._rng.randint(1, 40), self._rng.randint(1, 20))
                )
            sell.append(
                DepthLevel(ask + tick * level, instrument.lot_size * self._rng.randint(1, 40), self._rng.randint(1, 20))
            )
        return OrderBookDepth(buy=tuple(buy), sell=tuple(sell))

    def make_tick(self, instrument: Instrument, spot: Decimal) -> InstrumentTick:
        """Quote one instrument against the given spot."""
        tick_size = instrument.tick_size
        now = self.clock.now()

        if instrument.instrument_type == InstrumentType.SPOT:
            return InstrumentTick(
                token=instrument.token,
                symbol=instrument.symbol,
                underlying=instrument.underlying,
                instrument_type=instrument.instrument_type,
                ltp=spot,
                timestamp=now,
            )

        price = max(tick_size, round_to_tick(self._theoretical_price(instrument, spot), tick_size))
        half = max(tick_size, round_to_tick(price * HALF_SPREAD_PCT, tick_size))
        bid = max(tick_size, price - half)
        ask = price + half
        depth = self._depth(instrument, bid, ask)

        token = instrument.token
        self._volume[token] = self._volume.get(token, 0) + instrument.lot_size * self._rng.randint(0, 50)
        if token not in self._oi:
            self._oi[token] = instrument.lot_size * self._rng.randint(1_000, 50_000)
        self._oi[token] = max(0, self._oi[token] + instrument.lot_size * self._rng.randint(-20, 20))

        return InstrumentTick(
            token=token,
            symbol=instrument.symbol,
            underlying=instrument.underlying,
            instrument_type=instrument.instrument_type,
            ltp=price,
            timestamp=now,
            bid=bid,
            ask=ask,
            bid_qty=depth.buy[0].quantity if depth.buy else 0,
            ask_qty=depth.sell[0].quantity,
            volume=self._volume[token],
            oi=self._oi[token],
            strike=instrument.strike,
            expiry=instrument.expiry,
            depth=depth,
        )

    async def step(self) -> list[InstrumentTick]:
        """Advance every subscribed underlying one interval and dispatch the ticks."""
        if not self._connected:
            return []

        instruments = []
        for token in sorted(self._subscriptions):
            instrument = self.registry.find_by_token(token)
            if instrument is not None and instrument.underlying in self.spots:
                instruments.append(instrument)

        underlyings = {i.underlying for i in instruments}
        new_spots = {u: self._step_spot(u) for u in sorted(underlyings, key=lambda u: u.value)}

        ticks = []
        # spot first so consumers see the new spot before derivative quotes
        for instrument in sorted(instruments, key=lambda i: i.instrument_type != InstrumentType.SPOT):
            tick = self.make_tick(instrument, new_spots[instrument.underlying])
            ticks.append(tick)
            await self._dispatch(tick)
        return ticks

    async def start(self) -> None:
        """Start generating ticks until stop() or disconnect()."""
        self._running = True
        logger.info(f"SimDataFeed started, {len(self._subscriptions)} subscription(s)")
        while self._running:
            await self.step()
            await self.clock.sleep(self.config.tick_interval_ms / 1000)

    def stop(self) -> None:
        """Stop generation."""
        self._running = False
        logger.info("SimDataFeed stopped")
