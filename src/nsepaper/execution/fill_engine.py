"""
Fill engine.

Turns order requests into simulated executions against the market state
cache. MARKET orders fill in full after the injected latency; LIMIT orders
rest in an insertion-ordered book and are evaluated by sweep() on a fixed
cadence, filling partially as visible liquidity allows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from decimal import Decimal

from nsepaper.broker.models import Fill, Order, OrderRequest, generate_id
from nsepaper.config_loader import ExecutionConfig
from nsepaper.constants import (
    ContractSpec,
    InstrumentType,
    OrderSide,
    OrderStatus,
    OrderType,
    PricingParams,
    Underlying,
    VelocityCategory,
)
from nsepaper.data.instruments import InstrumentRegistry
from nsepaper.data.market_data import InstrumentState
from nsepaper.data.market_state import MarketState
from nsepaper.data.spot_tracker import SpotTracker
from nsepaper.events import EventBus, EventType
from nsepaper.execution.latency import LatencySimulator, LatencyTracker
from nsepaper.execution.slippage import (
    SlippageAnalyzer,
    SlippageInputs,
    SlippageRecord,
    SlippageResult,
    average_fill_price,
    calculate_slippage,
    depth_fills,
    fill_price,
)
from nsepaper.numeric import floor_to_multiple, round_to_tick, weighted_average
from nsepaper.time.clock import Clock, SystemClock
from nsepaper.time.session_manager import SessionManager

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DEFAULT_DAYS_TO_EXPIRY = 30
TIMEOUT_REASON = "timeout"

FillListener = Callable[[Order, Fill], None]


class FillEngine:
    """Simulated execution venue."""

    def __init__(
        self,
        market_state: MarketState,
        spot_tracker: SpotTracker,
        registry: InstrumentRegistry,
        session: SessionManager,
        event_bus: EventBus,
        config: ExecutionConfig | None = None,
        clock: Clock | None = None,
        latency: LatencySimulator | None = None,
    ) -> None:
        self.market_state = market_state
        self.spot_tracker = spot_tracker
        self.registry = registry
        self.session = session
        self.event_bus = event_bus
        self.config = config or ExecutionConfig()
        self.clock = clock or SystemClock()
        self.latency = latency or LatencySimulator(self.config.latency)

        self.latency_tracker = LatencyTracker(self.config.latency.tracker_size)
        self.slippage_analyzer = SlippageAnalyzer()

        self._orders: dict[str, Order] = {}
        self._pending: dict[str, Order] = {}
        self._fill_listeners: list[FillListener] = []
        self._lock = asyncio.Lock()

    def add_fill_listener(self, listener: FillListener) -> None:
        """Listeners run after a fill is recorded and before its order event is published."""
        self._fill_listeners.append(listener)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_order(self, request: OrderRequest) -> Order:
        """
        Create an order and execute or queue it.

        Never raises for expected failures: the returned order is REJECTED
        with a reason when validation fails or market data is unavailable.
        """
        order = self._create_order(request)
        self._orders[order.id] = order

        logger.info(
            f"Order created: {order.id} {order.side.value} {order.quantity} {order.symbol} "
            f"{order.order_type.value}"
        )
        self.event_bus.publish(EventType.ORDER_CREATED, {"order": order})

        reason = self._validate(order)
        if reason:
            self._reject(order, reason)
            return order

        if self.market_state.get_fresh(order.token, self.config.stale_threshold_ms) is None:
            self._reject(order, f"No market data for {order.symbol}")
            return order

        latency_ms = self.latency.sample(self._is_high_volatility(order.underlying))
        self.latency_tracker.record(latency_ms)
        await self.clock.sleep(latency_ms / 1000)

        async with self._lock:
            if order.is_done:
                return order

            state = self.market_state.get_fresh(order.token, self.config.stale_threshold_ms)
            if state is None:
                self._reject(order, f"No market data for {order.symbol}")
                return order

            if order.order_type == OrderType.MARKET:
                self._execute_market(order, state, latency_ms)
            else:
                order.status = OrderStatus.OPEN
                order.updated_at = self.clock.now()
                self._pending[order.id] = order
                logger.info(f"Order open: {order.id} {order.symbol} limit {order.limit_price}")

        return order

    def reject_request(self, request: OrderRequest, reason: str) -> Order:
        """Record a request refused before execution as a REJECTED order."""
        order = self._create_order(request)
        self._orders[order.id] = order
        self.event_bus.publish(EventType.ORDER_CREATED, {"order": order})
        self._reject(order, reason)
        return order

    def _create_order(self, request: OrderRequest) -> Order:
        now = self.clock.now()
        instrument = self.registry.find_by_symbol(request.symbol)
        if instrument is not None:
            token, underlying, itype = instrument.token, instrument.underlying, instrument.instrument_type
            strike, expiry = instrument.strike, instrument.expiry
        else:
            state = self.market_state.get_by_symbol(request.symbol)
            if state is not None:
                tick = state.tick
                token, underlying, itype = tick.token, tick.underlying, tick.instrument_type
                strike, expiry = tick.strike, tick.expiry
            else:
                token, underlying, itype = -1, Underlying.NIFTY, InstrumentType.CE
                strike, expiry = None, None

        return Order(
            id=generate_id("ord_"),
            request=request,
            token=token,
            underlying=underlying,
            instrument_type=itype,
            strike=strike,
            expiry=expiry,
            created_at=now,
            updated_at=now,
        )

    def _validate(self, order: Order) -> str | None:
        if order.token < 0:
            return f"No market data for {order.symbol}"
        if order.quantity <= 0:
            return f"Quantity must be positive, got {order.quantity}"
        if order.instrument_type == InstrumentType.SPOT:
            return "Spot indices are not tradable"
        if order.order_type == OrderType.LIMIT and (order.limit_price is None or order.limit_price <= 0):
            return "Limit order requires a positive limit price"
        return None

    def _is_high_volatility(self, underlying: Underlying) -> bool:
        category = self.spot_tracker.get_velocity_category(underlying)
        return category in (VelocityCategory.HIGH, VelocityCategory.EXTREME)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _tick_size(self, order: Order) -> Decimal:
        if order.instrument_type == InstrumentType.SPOT:
            return ContractSpec.TICK_SIZE
        return self.registry.tick_size(order.underlying)

    def _slippage(self, order: Order, state: InstrumentState, quantity: int) -> SlippageResult:
        tick = state.tick
        days = self.session.days_to_expiry(order.expiry) if order.expiry else DEFAULT_DAYS_TO_EXPIRY
        return calculate_slippage(
            SlippageInputs(
                side=order.side,
                quantity=quantity,
                bid=tick.bid,
                ask=tick.ask,
                instrument_type=order.instrument_type,
                spot_velocity=self.spot_tracker.get_velocity(order.underlying),
                iv_percent=state.iv if state.iv is not None else PricingParams.DEFAULT_IV_PERCENT,
                daily_volume=tick.volume,
                depth=tick.depth,
                days_to_expiry=days,
                tick_size=self._tick_size(order),
            ),
            self.config.slippage,
        )

    def _execute_market(self, order: Order, state: InstrumentState, latency_ms: int) -> None:
        tick = state.tick
        if not tick.has_two_sided_quote:
            self._reject(order, f"No two-sided quote for {order.symbol}")
            return

        tick_size = self._tick_size(order)
        slippage = self._slippage(order, state, order.quantity)

        if tick.depth is not None and (tick.depth.buy or tick.depth.sell):
            walked = depth_fills(order.side, order.quantity, tick.depth, slippage.total, tick_size)
            price = average_fill_price(walked, tick_size) if walked else ZERO
        else:
            price = ZERO
        if price <= 0:
            price = fill_price(order.side, tick.bid, tick.ask, slippage.total, tick_size)

        # keep the fill on the adverse side of the quote
        if order.side == OrderSide.BUY:
            price = max(price, tick.ask)
        else:
            price = max(ZERO, min(price, tick.bid))

        self._apply_fill(order, price, order.quantity, slippage, latency_ms, state)

    def _apply_fill(
        self,
        order: Order,
        price: Decimal,
        quantity: int,
        slippage: SlippageResult,
        latency_ms: int,
        state: InstrumentState,
    ) -> Fill:
        now = self.clock.now()
        fill = Fill(
            id=generate_id("fill_"),
            order_id=order.id,
            price=price,
            quantity=quantity,
            slippage=slippage.total,
            latency_ms=latency_ms,
            timestamp=now,
        )
        order.fills.append(fill)
        order.filled_qty += quantity
        order.avg_fill_price = round_to_tick(
            weighted_average((f.price, f.quantity) for f in order.fills), self._tick_size(order)
        )
        order.status = OrderStatus.FILLED if order.filled_qty >= order.quantity else OrderStatus.PARTIAL
        order.updated_at = now

        if order.is_done:
            self._pending.pop(order.id, None)

        self.slippage_analyzer.add(
            SlippageRecord(
                timestamp=now,
                symbol=order.symbol,
                side=order.side,
                quantity=quantity,
                expected=slippage.total,
                actual=slippage.total,
                spot_velocity=self.spot_tracker.get_velocity(order.underlying),
                iv_percent=state.iv if state.iv is not None else PricingParams.DEFAULT_IV_PERCENT,
                components=slippage.components,
            )
        )

        for listener in self._fill_listeners:
            listener(order, fill)

        if order.status == OrderStatus.FILLED:
            logger.info(
                f"Order filled: {order.id} {order.side.value} {order.filled_qty} {order.symbol} "
                f"@ {order.avg_fill_price} (slippage {slippage.total}, latency {latency_ms}ms)"
            )
            self.event_bus.publish(EventType.ORDER_FILLED, {"order": order, "fill": fill})
        else:
            logger.info(
                f"Order partial: {order.id} filled {order.filled_qty}/{order.quantity} @ {fill.price}"
            )
            self.event_bus.publish(EventType.ORDER_PARTIAL, {"order": order, "fill": fill})
        return fill

    def _reject(self, order: Order, reason: str) -> None:
        order.status = OrderStatus.REJECTED
        order.rejection_reason = reason
        order.updated_at = self.clock.now()
        self._pending.pop(order.id, None)
        logger.warning(f"Order rejected: {order.id} {order.symbol}: {reason}")
        self.event_bus.publish(EventType.ORDER_REJECTED, {"order": order, "reason": reason})

    def _cancel(self, order: Order, reason: str) -> None:
        order.status = OrderStatus.CANCELLED
        order.rejection_reason = reason
        order.updated_at = self.clock.now()
        self._pending.pop(order.id, None)
        logger.info(f"Order cancelled: {order.id} ({reason})")
        self.event_bus.publish(EventType.ORDER_CANCELLED, {"order": order, "reason": reason})

    # ------------------------------------------------------------------
    # Limit order sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """
        Evaluate resting limit orders once, in insertion order.

        Returns the number of fills produced. Orders without fresh data are
        skipped; orders older than the pending timeout are cancelled first.
        """
        fills = 0
        async with self._lock:
            now = self.clock.now()
            timeout_ms = self.config.pending_timeout_ms

            for order in list(self._pending.values()):
                if order.is_done:
                    self._pending.pop(order.id, None)
                    continue

                if (now - order.created_at).total_seconds() * 1000 >= timeout_ms:
                    self._cancel(order, TIMEOUT_REASON)
                    continue

                state = self.market_state.get_fresh(order.token, self.config.stale_threshold_ms)
                if state is None or not state.tick.has_two_sided_quote:
                    continue

                if self._try_fill_limit(order, state):
                    fills += 1

        if fills:
            logger.debug(f"Sweep produced {fills} fill(s); {len(self._pending)} order(s) resting")
        return fills

    def _try_fill_limit(self, order: Order, state: InstrumentState) -> bool:
        limit = order.limit_price
        if limit is None:
            return False

        tick = state.tick
        remaining = order.remaining_qty
        slippage = self._slippage(order, state, remaining)
        price = fill_price(order.side, tick.bid, tick.ask, slippage.total, self._tick_size(order))

        if order.side == OrderSide.BUY and price > limit:
            return False
        if order.side == OrderSide.SELL and price < limit:
            return False

        bid_liq, ask_liq = self.market_state.get_liquidity(order.token)
        liquidity = ask_liq if order.side == OrderSide.BUY else bid_liq
        quantity = self._fillable_quantity(order, remaining, liquidity)
        if quantity <= 0:
            return False

        self._apply_fill(order, price, quantity, slippage, 0, state)
        return True

    def _fillable_quantity(self, order: Order, remaining: int, liquidity: int) -> int:
        """Fill what the book shows, in whole lots; everything when no size is quoted."""
        if liquidity <= 0 or remaining <= liquidity:
            return remaining
        lot = self.registry.lot_size(order.underlying) if order.instrument_type != InstrumentType.SPOT else 1
        return floor_to_multiple(liquidity, lot)

    # ------------------------------------------------------------------
    # Cancellation and queries
    # ------------------------------------------------------------------

    def cancel_order(self, order_id: str, reason: str = "user") -> bool:
        """Cancel a resting order. Returns False for unknown or terminal orders."""
        order = self._pending.get(order_id)
        if order is None or order.is_done:
            return False
        self._cancel(order, reason)
        return True

    def cancel_all(self, reason: str = "engine stopped") -> int:
        count = 0
        for order_id in list(self._pending):
            if self.cancel_order(order_id, reason):
                count += 1
        return count

    def get_pending_orders(self) -> list[Order]:
        return list(self._pending.values())

    def get_order(self, order_id: str) -> Order | None:
        return self._orders.get(order_id)

    def get_orders(self) -> list[Order]:
        return list(self._orders.values())

    def stats(self) -> dict[str, object]:
        by_status = {status.value: 0 for status in OrderStatus}
        for order in self._orders.values():
            by_status[order.status.value] += 1
        latency = self.latency_tracker.stats()
        return {
            "orders": len(self._orders),
            "pending": len(self._pending),
            "by_status": by_status,
            "avg_slippage": self.slippage_analyzer.average(),
            "avg_latency_ms": latency.mean,
            "p95_latency_ms": latency.p95,
        }
