"""Execution Engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from nsepaper.broker.models import Fill, Order, OrderRequest, Position, Strategy, StrategyLeg, generate_id
from nsepaper.config_loader import RiskConfig
from nsepaper.constants import (
    FORCE_EXIT_TAG,
    ExitReason,
    InstrumentType,
    KillSwitchReason,
    OrderSide,
    OrderType,
    PositionSide,
    PricingParams,
    StrategyType,
    Underlying,
)
from nsepaper.data.instruments import InstrumentRegistry
from nsepaper.data.market_data import InstrumentTick
from nsepaper.data.market_state import MarketState
from nsepaper.data.spot_tracker import SpotTracker
from nsepaper.errors import StrategyError
from nsepaper.events import Event, EventBus, EventType
from nsepaper.execution.fill_engine import DEFAULT_DAYS_TO_EXPIRY, FillEngine
from nsepaper.numeric import format_inr
from nsepaper.persistence.state_store import PortfolioSnapshot, StateStore
from nsepaper.position.position_manager import PositionManager
from nsepaper.position.strategy_aggregator import StrategyAggregator
from nsepaper.position.strategy_monitor import StrategyMonitor
from nsepaper.risk.kill_switch import KillSwitch, KillSwitchEvent
from nsepaper.risk.margin_tracker import MarginState, MarginTracker
from nsepaper.risk.span_margin import futures_margin, option_margin
from nsepaper.time.clock import Clock, SystemClock
from nsepaper.time.session_manager import SessionManager

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class CycleReport:
    """Outcome of one periodic update cycle."""

    swept: int
    pnl: Decimal
    margin: MarginState
    kill_switch: KillSwitchEvent


class ExecutionEngine:
    """
    Orchestrates order admission, fills, margin and the risk cycle.

    Every submission returns an Order. Requests refused by the admission
    gates come back REJECTED with a reason; nothing about positions or
    margin changes for them.
    """

    def __init__(
        self,
        fill_engine: FillEngine,
        position_manager: PositionManager,
        margin_tracker: MarginTracker,
        kill_switch: KillSwitch,
        registry: InstrumentRegistry,
        market_state: MarketState,
        spot_tracker: SpotTracker,
        session: SessionManager,
        event_bus: EventBus,
        risk_config: RiskConfig | None = None,
        strategies: StrategyAggregator | None = None,
        state_store: StateStore | None = None,
        save_on_fill: bool = True,
        clock: Clock | None = None,
        monitor: StrategyMonitor | None = None,
    ) -> None:
        self.fills = fill_engine
        self.positions = position_manager
        self.margin = margin_tracker
        self.kill_switch = kill_switch
        self.registry = registry
        self.market_state = market_state
        self.spot_tracker = spot_tracker
        self.session = session
        self.event_bus = event_bus
        self.risk_config = risk_config or RiskConfig()
        self.strategies = strategies
        self.state_store = state_store
        self.save_on_fill = save_on_fill
        self.clock = clock or SystemClock()
        self.monitor = monitor

        self.fills.add_fill_listener(self._on_fill)
        self.kill_switch.set_force_exit_callback(self.force_exit)
        self.event_bus.subscribe(EventType.ORDER_PARTIAL, self._on_order_partial)
        for event_type in (EventType.ORDER_FILLED, EventType.ORDER_CANCELLED, EventType.ORDER_REJECTED):
            self.event_bus.subscribe(event_type, self._on_order_done)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def on_tick(self, tick: InstrumentTick) -> None:
        """Feed callback: update market state and the spot tracker."""
        accepted = self.market_state.update_from_tick(tick)
        if accepted and tick.instrument_type == InstrumentType.SPOT:
            self.spot_tracker.update(tick.underlying, tick.ltp, tick.timestamp)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _closing_quantity(self, request: OrderRequest) -> int:
        position = self.positions.get_position_by_symbol(request.symbol)
        if position is None:
            return 0
        reduces = (position.side == PositionSide.LONG) == (request.side == OrderSide.SELL)
        return min(request.quantity, position.quantity) if reduces else 0

    def _days_to_expiry(self, expiry: date | None) -> int:
        if expiry is None:
            return DEFAULT_DAYS_TO_EXPIRY
        return self.session.days_to_expiry(expiry, self.clock.now())

    def estimate_margin(self, request: OrderRequest) -> Decimal:
        """
        Margin needed to admit a request.

        Only the quantity that opens or extends exposure counts. Option buys
        need the premium at the ask; option sells need net short margin;
        futures need futures margin either side.
        """
        instrument = self.registry.find_by_symbol(request.symbol)
        if instrument is None:
            return ZERO
        opening = request.quantity - self._closing_quantity(request)
        if opening <= 0:
            return ZERO

        spot = self.market_state.get_spot_price(instrument.underlying)
        days = self._days_to_expiry(instrument.expiry)

        if instrument.instrument_type == InstrumentType.FUT:
            return futures_margin(opening, spot, days, self.margin.calculator.config).net_margin

        if not instrument.is_option or instrument.strike is None:
            return ZERO

        bid, ask = self.market_state.get_bid_ask(instrument.token)
        if request.side == OrderSide.BUY:
            price = request.limit_price if request.order_type == OrderType.LIMIT and request.limit_price else ask
            return (price or self.market_state.get_ltp(instrument.token)) * opening

        price = bid or self.market_state.get_ltp(instrument.token)
        iv = self.market_state.get_iv(instrument.token) or PricingParams.DEFAULT_IV_PERCENT
        return option_margin(
            instrument.instrument_type,
            instrument.strike,
            PositionSide.SHORT,
            opening,
            price,
            spot,
            iv,
            days,
            self.margin.calculator.config,
        ).net_margin

    def check_admission(self, request: OrderRequest) -> str | None:
        """Return the first gate a request fails, or None when it may proceed."""
        force_exit = request.tag == FORCE_EXIT_TAG

        if self.kill_switch.is_triggered and not force_exit:
            reason = self.kill_switch.state.reason
            return f"Kill switch active: {reason.value if reason else 'UNKNOWN'}"

        instrument = self.registry.find_by_symbol(request.symbol)
        if instrument is not None and instrument.instrument_type != InstrumentType.SPOT:
            lot_size = instrument.lot_size
            if request.quantity <= 0 or request.quantity % lot_size != 0:
                return f"Quantity {request.quantity} is not a multiple of lot size {lot_size}"
            lots = request.quantity // lot_size
            if lots > self.risk_config.max_lots_per_order and not force_exit:
                return f"{lots} lots exceeds per-order limit of {self.risk_config.max_lots_per_order}"

        if force_exit:
            return None

        if len(self.fills.get_pending_orders()) >= self.risk_config.max_open_orders:
            return f"Open order limit reached ({self.risk_config.max_open_orders})"

        if (
            self.positions.get_position_by_symbol(request.symbol) is None
            and len(self.positions) >= self.risk_config.max_positions
        ):
            return f"Position limit reached ({self.risk_config.max_positions})"

        allowed, reason = self.margin.can_place_order(self.estimate_margin(request))
        if not allowed:
            return reason
        return None

    async def submit_order(self, request: OrderRequest) -> Order:
        """Admit, reserve margin for and execute an order request."""
        reason = self.check_admission(request)
        if reason:
            return self.fills.reject_request(request, reason)

        provisional = generate_id("rsv_")
        if request.tag != FORCE_EXIT_TAG:
            self.margin.reserve(provisional, self.estimate_margin(request))
        try:
            order = await self.fills.submit_order(request)
        finally:
            amount = self.margin.release(provisional)

        if not order.is_done and amount > 0:
            self.margin.reserve(order.id, amount * order.remaining_qty / order.quantity)

        if self.strategies is not None and request.strategy_id:
            self.strategies.link_order(request.strategy_id, order.id)
        return order

    def cancel_order(self, order_id: str, reason: str = "user") -> bool:
        return self.fills.cancel_order(order_id, reason)

    def get_pending_orders(self) -> list[Order]:
        return self.fills.get_pending_orders()

    # ------------------------------------------------------------------
    # Fills and order events
    # ------------------------------------------------------------------

    def _on_fill(self, order: Order, fill: Fill) -> None:
        trade = self.positions.apply_fill(order, fill)
        self.margin.add_realized_pnl(trade.pnl_impact)
        self.update_margin()
        if self.save_on_fill:
            self.save_snapshot()

    def _on_order_done(self, event: Event) -> None:
        order: Order = event.payload["order"]
        self.margin.release(order.id)

    def _on_order_partial(self, event: Event) -> None:
        order: Order = event.payload["order"]
        fill: Fill = event.payload["fill"]
        reserved = self.margin.reserved_for(order.id)
        if reserved > 0:
            before = order.remaining_qty + fill.quantity
            self.margin.reserve(order.id, reserved * order.remaining_qty / before)

    # ------------------------------------------------------------------
    # Margin and risk cycle
    # ------------------------------------------------------------------

    def update_margin(self) -> MarginState:
        positions = self.positions.get_all_positions()
        ivs: dict[int, Decimal] = {}
        for position in positions:
            iv = self.market_state.get_iv(position.token)
            if iv:
                ivs[position.token] = iv
        days = {p.id: self._days_to_expiry(p.expiry) for p in positions}
        return self.margin.update(positions, self.market_state.all_spot_prices(), ivs, days, self.clock.now())

    async def run_cycle(self) -> CycleReport:
        """
        One periodic update: sweep limits, re-mark positions, recompute
        margin, then check the kill switch against that same margin snapshot.
        While the switch is clear, monitored strategies past their target or
        stop loss are closed.
        """
        swept = await self.fills.sweep()
        self.positions.update_market_prices()
        margin = self.update_margin()
        if self.strategies is not None:
            self.strategies.update_pnl()

        pnl = self.positions.get_aggregate_pnl().total
        event = await self.kill_switch.check(pnl, margin, self.positions.get_all_positions())
        if self.monitor is not None and not self.kill_switch.is_triggered:
            await self._exit_monitored()
        return CycleReport(swept=swept, pnl=pnl, margin=margin, kill_switch=event)

    async def _exit_monitored(self) -> None:
        assert self.monitor is not None
        for strategy, reason in self.monitor.due_exits():
            logger.warning(f"Closing {strategy.name} on {reason.value}: {format_inr(strategy.total_pnl)}")
            await self.close_strategy(strategy.id, reason)
            self.monitor.unwatch(strategy.id)

    async def force_exit(self, positions: list[Position]) -> list[Order]:
        """Cancel working orders and flatten positions at market."""
        cancelled = self.fills.cancel_all("force exit")
        if cancelled:
            logger.warning(f"Force exit cancelled {cancelled} working order(s)")

        orders = []
        for position in positions:
            if position.quantity <= 0:
                continue
            request = OrderRequest(
                symbol=position.symbol,
                side=OrderSide.SELL if position.side == PositionSide.LONG else OrderSide.BUY,
                quantity=position.quantity,
                order_type=OrderType.MARKET,
                strategy_id=position.strategy_id,
                tag=FORCE_EXIT_TAG,
                exit_reason=ExitReason.KILL_SWITCH,
            )
            order = await self.submit_order(request)
            if order.rejection_reason:
                logger.error(f"Force exit order for {position.symbol} failed: {order.rejection_reason}")
            orders.append(order)
        return orders

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def open_strategy(
        self,
        strategy_type: StrategyType,
        underlying: Underlying,
        expiry: date,
        lots: int = 1,
        legs: list[StrategyLeg] | None = None,
    ) -> tuple[Strategy, list[Order]]:
        """Build a strategy and submit its legs, hedges first."""
        if self.strategies is None:
            raise StrategyError("Strategy support is not configured")
        spot = self.market_state.get_spot_price(underlying)
        if spot <= 0:
            raise StrategyError(f"No spot price for {underlying.value}")

        strategy, requests = self.strategies.build(strategy_type, underlying, expiry, spot, lots, legs)
        orders = []
        for request in sorted(requests, key=lambda r: r.side != OrderSide.BUY):
            order = await self.submit_order(request)
            orders.append(order)
            if order.rejection_reason:
                logger.error(f"Strategy {strategy.name} leg {request.symbol} rejected: {order.rejection_reason}")
                break
        return strategy, orders

    async def open_premium_strangle(
        self, underlying: Underlying, lots: int = 1, capital: Decimal | None = None
    ) -> tuple[Strategy, list[Order]]:
        """
        Sell the CE and PE of the rollover monthly expiry priced closest to
        the premium target for the capital, and monitor the strategy when a
        monitor is configured and every leg was accepted.
        """
        if self.strategies is None:
            raise StrategyError("Strategy support is not configured")
        capital = capital or self.margin.initial_capital
        spot = self.market_state.get_spot_price(underlying)
        if spot <= 0:
            raise StrategyError(f"No spot price for {underlying.value}")

        candidate = self.strategies.find_strangle_by_premium(underlying, capital)
        if candidate is None:
            raise StrategyError(f"No priced strangle for {underlying.value}")

        legs = self.strategies.strangle_legs(candidate, spot)
        strategy, orders = await self.open_strategy(
            StrategyType.SHORT_STRANGLE, underlying, candidate.expiry, lots, legs
        )
        if self.monitor is not None and len(orders) == len(legs) and not any(o.rejection_reason for o in orders):
            self.monitor.watch(strategy.id, capital)
        return strategy, orders

    async def close_strategy(self, strategy_id: str, reason: ExitReason = ExitReason.MANUAL) -> list[Order]:
        if self.strategies is None:
            raise StrategyError("Strategy support is not configured")
        return [await self.submit_order(r) for r in self.strategies.exit_requests(strategy_id, reason)]

    # ------------------------------------------------------------------
    # Persistence and lifecycle
    # ------------------------------------------------------------------

    def snapshot(self) -> PortfolioSnapshot:
        state = self.kill_switch.state
        return PortfolioSnapshot(
            trading_date=self.clock.now().date(),
            initial_capital=self.margin.initial_capital,
            realized_pnl=self.margin.realized_pnl,
            positions=self.positions.get_all_positions(),
            strategies=self.strategies.get_active_strategies() if self.strategies is not None else [],
            kill_switch_active=state.triggered,
            kill_switch_reason=state.reason.value if state.reason else "",
        )

    def save_snapshot(self) -> bool:
        if self.state_store is None:
            return False
        return self.state_store.save(self.snapshot())

    def restore(self, snapshot: PortfolioSnapshot) -> None:
        """
        Rebuild the book from a snapshot.

        A snapshot from an earlier day starts a fresh day: realized P&L is
        carried into capital and a tripped kill switch is not restored.
        """
        same_day = snapshot.trading_date == self.clock.now().date()
        self.positions.restore(snapshot.positions, snapshot.realized_pnl if same_day else ZERO)
        if self.strategies is not None:
            self.strategies.restore(snapshot.strategies)
        self.margin.initial_capital = snapshot.initial_capital

        if same_day:
            self.margin.realized_pnl = snapshot.realized_pnl
            if snapshot.kill_switch_active:
                state = self.kill_switch.state
                state.triggered = True
                state.reason = KillSwitchReason(snapshot.kill_switch_reason or KillSwitchReason.MANUAL.value)
                state.message = "Restored from snapshot"
                logger.warning(f"Kill switch restored active: {state.reason.value}")
        else:
            self.margin.update_capital(snapshot.initial_capital + snapshot.realized_pnl)
            self.margin.realized_pnl = ZERO

        self.update_margin()

    def reset_daily(self) -> None:
        """Start a new trading day."""
        self.fills.cancel_all("daily reset")
        self.margin.reset_daily()
        self.positions.reset_daily()
        self.kill_switch.reset()
        logger.info(f"Daily reset complete, capital {format_inr(self.margin.initial_capital)}")
        self.event_bus.publish(EventType.DAILY_RESET, {"capital": self.margin.initial_capital})
        if self.save_on_fill:
            self.save_snapshot()

    def status(self) -> dict[str, Any]:
        pnl = self.positions.get_aggregate_pnl()
        greeks = self.positions.get_net_greeks()
        state = self.margin.get_state()
        return {
            "positions": pnl.position_count,
            "trades": pnl.trade_count,
            "pending_orders": len(self.fills.get_pending_orders()),
            "realized_pnl": pnl.realized,
            "unrealized_pnl": pnl.unrealized,
            "total_pnl": pnl.total,
            "used_margin": state.used_margin,
            "available_margin": state.available_margin,
            "utilization": state.utilization,
            "net_delta": greeks.delta,
            "net_gamma": greeks.gamma,
            "net_theta": greeks.theta,
            "net_vega": greeks.vega,
            "kill_switch": self.kill_switch.status(),
        }
