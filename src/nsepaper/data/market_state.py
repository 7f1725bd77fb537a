"""Latest market state per instrument and spot price per underlying."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal

from nsepaper.constants import DEFAULT_STALE_THRESHOLD_MS, InstrumentType, SlippageParams, Underlying
from nsepaper.data.market_data import Greeks, InstrumentState, InstrumentTick, OrderBookDepth
from nsepaper.errors import MarketDataStaleError
from nsepaper.events import EventBus, EventType
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class MarketState:
    """
    Read-mostly cache of normalized ticks.

    Readers must treat a missing entry as "no data yet"; every lookup that can
    miss returns None (or zero for the numeric helpers) instead of raising.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS,
    ) -> None:
        self.clock = clock or SystemClock()
        self.event_bus = event_bus
        self.stale_threshold_ms = stale_threshold_ms

        self._states: dict[int, InstrumentState] = {}
        self._symbol_to_token: dict[str, int] = {}
        self._spots: dict[Underlying, Decimal] = {}
        self.out_of_order_ticks = 0

    def __len__(self) -> int:
        return len(self._states)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_from_tick(self, tick: InstrumentTick) -> bool:
        """
        Store a tick. Returns False when it is older than the stored one.

        Computed IV/Greeks survive the re-tick but are flagged stale until
        update_greeks is called again.
        """
        existing = self._states.get(tick.token)
        if existing is not None and tick.timestamp < existing.tick.timestamp:
            self.out_of_order_ticks += 1
            logger.debug(f"Ignoring out-of-order tick for {tick.symbol}")
            return False

        self._states[tick.token] = InstrumentState(
            tick=tick,
            last_update=tick.timestamp,
            iv=existing.iv if existing else None,
            greeks=existing.greeks if existing else None,
            greeks_stale=existing is not None and existing.greeks is not None,
        )
        self._symbol_to_token[tick.symbol] = tick.token

        if tick.instrument_type == InstrumentType.SPOT:
            self._spots[tick.underlying] = tick.ltp

        if self.event_bus is not None:
            self.event_bus.publish(EventType.TICK, {"token": tick.token, "symbol": tick.symbol, "ltp": tick.ltp})
        return True

    def update_greeks(self, token: int, greeks: Greeks) -> None:
        state = self._states.get(token)
        if state is not None:
            state.greeks = greeks
            state.iv = greeks.iv
            state.greeks_stale = False

    def set_spot(self, underlying: Underlying, price: Decimal) -> None:
        self._spots[underlying] = price

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_token(self, token: int) -> InstrumentState | None:
        return self._states.get(token)

    def get_by_symbol(self, symbol: str) -> InstrumentState | None:
        token = self._symbol_to_token.get(symbol)
        return self._states.get(token) if token is not None else None

    def get_ltp(self, token: int) -> Decimal:
        state = self._states.get(token)
        return state.tick.ltp if state else ZERO

    def get_bid_ask(self, token: int) -> tuple[Decimal, Decimal]:
        state = self._states.get(token)
        if state is None:
            return ZERO, ZERO
        return state.tick.bid, state.tick.ask

    def get_mid_price(self, token: int) -> Decimal:
        state = self._states.get(token)
        return state.mid if state else ZERO

    def get_spread(self, token: int) -> Decimal:
        bid, ask = self.get_bid_ask(token)
        if bid <= 0 or ask <= 0:
            return ZERO
        return ask - bid

    def get_spread_percent(self, token: int) -> Decimal:
        mid = self.get_mid_price(token)
        if mid <= 0:
            return ZERO
        return self.get_spread(token) / mid * 100

    def get_spot_price(self, underlying: Underlying) -> Decimal:
        return self._spots.get(underlying, ZERO)

    def all_spot_prices(self) -> dict[Underlying, Decimal]:
        return dict(self._spots)

    def get_depth(self, token: int) -> OrderBookDepth | None:
        state = self._states.get(token)
        return state.tick.depth if state else None

    def get_liquidity(self, token: int, levels: int = SlippageParams.DEPTH_LEVELS) -> tuple[int, int]:
        """(bid liquidity, ask liquidity) over the top levels, or top-of-book quantities."""
        state = self._states.get(token)
        if state is None:
            return 0, 0
        depth = state.tick.depth
        if depth is None:
            return state.tick.bid_qty, state.tick.ask_qty
        bid_liq = sum(level.quantity for level in depth.buy[:levels])
        ask_liq = sum(level.quantity for level in depth.sell[:levels])
        return bid_liq, ask_liq

    def get_iv(self, token: int) -> Decimal | None:
        state = self._states.get(token)
        return state.iv if state else None

    def get_greeks(self, token: int) -> Greeks | None:
        state = self._states.get(token)
        return state.greeks if state else None

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    def is_stale(self, token: int, threshold_ms: int | None = None) -> bool:
        state = self._states.get(token)
        if state is None:
            return True
        threshold = self.stale_threshold_ms if threshold_ms is None else threshold_ms
        return self.clock.elapsed_ms(state.last_update) > threshold

    def get_fresh(self, token: int, threshold_ms: int | None = None) -> InstrumentState | None:
        """State only if it is younger than the stale threshold."""
        if self.is_stale(token, threshold_ms):
            return None
        return self._states[token]

    def require_fresh(self, token: int, threshold_ms: int | None = None) -> InstrumentState:
        state = self.get_fresh(token, threshold_ms)
        if state is None:
            existing = self._states.get(token)
            raise MarketDataStaleError(
                f"No fresh market data for token {token}",
                {"last_update": existing.last_update.isoformat() if existing else None},
            )
        return state

    # ------------------------------------------------------------------
    # Option chain views
    # ------------------------------------------------------------------

    def option_states(self, underlying: Underlying, expiry: date | None = None) -> list[InstrumentState]:
        return [
            s
            for s in self._states.values()
            if s.tick.underlying == underlying
            and s.tick.instrument_type.is_option
            and (expiry is None or s.tick.expiry == expiry)
        ]

    def option_chain_snapshot(
        self, underlying: Underlying, expiry: date, strikes: list[Decimal] | None = None
    ) -> dict[Decimal, dict[InstrumentType, InstrumentState]]:
        """Strike -> {CE: state, PE: state}, for strikes with at least one side."""
        chain: dict[Decimal, dict[InstrumentType, InstrumentState]] = defaultdict(dict)
        wanted = set(strikes) if strikes is not None else None
        for state in self.option_states(underlying, expiry):
            strike = state.tick.strike
            if strike is None or (wanted is not None and strike not in wanted):
                continue
            chain[strike][state.tick.instrument_type] = state
        return dict(sorted(chain.items()))

    def total_oi(self, underlying: Underlying, expiry: date) -> tuple[int, int]:
        """(call OI, put OI) for an expiry."""
        call_oi = put_oi = 0
        for state in self.option_states(underlying, expiry):
            if state.tick.instrument_type == InstrumentType.CE:
                call_oi += state.tick.oi
            else:
                put_oi += state.tick.oi
        return call_oi, put_oi

    def max_oi_strike(self, underlying: Underlying, expiry: date) -> Decimal | None:
        """Strike with the highest combined CE+PE open interest."""
        oi_by_strike: dict[Decimal, int] = defaultdict(int)
        for state in self.option_states(underlying, expiry):
            if state.tick.strike is not None:
                oi_by_strike[state.tick.strike] += state.tick.oi
        if not oi_by_strike:
            return None
        return max(oi_by_strike.items(), key=lambda item: item[1])[0]

    def stats(self) -> dict[str, int]:
        stale = options = futures = 0
        for token, state in self._states.items():
            if self.is_stale(token):
                stale += 1
            if state.tick.instrument_type.is_option:
                options += 1
            elif state.tick.instrument_type == InstrumentType.FUT:
                futures += 1
        return {
            "total_instruments": len(self._states),
            "stale": stale,
            "options": options,
            "futures": futures,
            "out_of_order_ticks": self.out_of_order_ticks,
        }

    def clear(self) -> None:
        self._states.clear()
        self._symbol_to_token.clear()
        self._spots.clear()
