"""Multi-leg strategy templates and per-strategy P&L roll-up."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from nsepaper.broker.models import OrderRequest, Position, Strategy, StrategyLeg, generate_id
from nsepaper.config_loader import StrategyConfig
from nsepaper.constants import (
    ExitReason,
    InstrumentType,
    OrderSide,
    OrderType,
    StrategyStatus,
    StrategyType,
    Underlying,
)
from nsepaper.data.instruments import Instrument, InstrumentRegistry
from nsepaper.data.market_state import MarketState
from nsepaper.errors import InstrumentNotFoundError, StrategyError
from nsepaper.events import Event, EventBus, EventType
from nsepaper.numeric import format_inr
from nsepaper.position.position_manager import PositionManager
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

CE, PE = InstrumentType.CE, InstrumentType.PE
BUY, SELL = OrderSide.BUY, OrderSide.SELL

STRATEGY_TEMPLATES: dict[StrategyType, tuple[StrategyLeg, ...]] = {
    StrategyType.SHORT_STRADDLE: (
        StrategyLeg(CE, 0, SELL),
        StrategyLeg(PE, 0, SELL),
    ),
    StrategyType.SHORT_STRANGLE: (
        StrategyLeg(CE, 1, SELL),
        StrategyLeg(PE, -1, SELL),
    ),
    StrategyType.IRON_FLY: (
        StrategyLeg(CE, 0, SELL),
        StrategyLeg(PE, 0, SELL),
        StrategyLeg(CE, 2, BUY),
        StrategyLeg(PE, -2, BUY),
    ),
    StrategyType.IRON_CONDOR: (
        StrategyLeg(CE, 1, SELL),
        StrategyLeg(PE, -1, SELL),
        StrategyLeg(CE, 2, BUY),
        StrategyLeg(PE, -2, BUY),
    ),
    StrategyType.BULL_CALL_SPREAD: (
        StrategyLeg(CE, 0, BUY),
        StrategyLeg(CE, 1, SELL),
    ),
    StrategyType.BEAR_PUT_SPREAD: (
        StrategyLeg(PE, 0, BUY),
        StrategyLeg(PE, -1, SELL),
    ),
}

_POSITION_EVENTS = (EventType.POSITION_OPENED, EventType.POSITION_UPDATED, EventType.POSITION_CLOSED)


@dataclass(frozen=True)
class StrangleCandidate:
    """CE and PE whose premiums sit closest to a per-leg target."""

    ce: Instrument
    pe: Instrument
    ce_ltp: Decimal
    pe_ltp: Decimal
    target_premium: Decimal
    expiry: date


def monthly_expiry(expiries: list[date], year: int, month: int) -> date | None:
    """Last listed expiry in a calendar month; expiries must be sorted."""
    in_month = [e for e in expiries if e.year == year and e.month == month]
    return in_month[-1] if in_month else None


def rollover_expiry(expiries: list[date], today: date, rollover_day: int = 15) -> date | None:
    """
    Monthly expiry to trade today.

    From rollover_day onwards the next month's monthly is the target, before
    it the current month's. When the target month has no listing, the current
    month's monthly is used, then the furthest listed expiry.
    """
    if not expiries:
        return None
    year, month = today.year, today.month
    if today.day >= rollover_day:
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return (
        monthly_expiry(expiries, year, month)
        or monthly_expiry(expiries, today.year, today.month)
        or expiries[-1]
    )


def target_premium_per_leg(capital: Decimal, lot_size: int, capital_pct: Decimal) -> Decimal:
    """Per-leg premium in points so that one lot of both legs collects capital_pct of capital."""
    return capital * capital_pct / lot_size / 2


class StrategyAggregator:
    """
    Groups positions into named strategies.

    Positions are linked through the strategy id carried on the opening
    order. A strategy closes once every linked position has closed.
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        position_manager: PositionManager,
        event_bus: EventBus | None = None,
        clock: Clock | None = None,
        market_state: MarketState | None = None,
        config: StrategyConfig | None = None,
    ) -> None:
        self.registry = registry
        self.position_manager = position_manager
        self.event_bus = event_bus
        self.clock = clock or SystemClock()
        self.market_state = market_state
        self.config = config or StrategyConfig()
        self._strategies: dict[str, Strategy] = {}
        self._closed_leg_pnl: dict[str, Decimal] = {}
        self._restored_realized: dict[str, Decimal] = {}

        if event_bus is not None:
            for event_type in _POSITION_EVENTS:
                event_bus.subscribe(event_type, self._on_position_event)

    def __len__(self) -> int:
        return len(self._strategies)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build(
        self,
        strategy_type: StrategyType,
        underlying: Underlying,
        expiry: date,
        spot: Decimal,
        lots: int = 1,
        legs: list[StrategyLeg] | None = None,
        name: str | None = None,
    ) -> tuple[Strategy, list[OrderRequest]]:
        """
        Register a strategy and return the order requests for its legs.

        Strikes are placed from the ATM strike in strike-interval steps. A
        CUSTOM strategy needs explicit legs. Orders are MARKET and tagged with
        the strategy type; the caller submits them.
        """
        if lots <= 0:
            raise StrategyError(f"Lots must be positive, got {lots}")

        if legs is None:
            if strategy_type not in STRATEGY_TEMPLATES:
                raise StrategyError(f"No template for {strategy_type.value}; pass legs explicitly")
            legs = list(STRATEGY_TEMPLATES[strategy_type])
        if not legs:
            raise StrategyError("A strategy needs at least one leg")

        atm = self.registry.atm_strike(underlying, spot)
        interval = self.registry.strike_interval(underlying)
        lot_size = self.registry.lot_size(underlying)

        strategy = Strategy(
            id=generate_id("stg_"),
            name=name or strategy_type.value,
            strategy_type=strategy_type,
            underlying=underlying,
            expiry=expiry,
            atm_strike=atm,
            legs=list(legs),
            lots=lots,
            lot_size=lot_size,
            entry_time=self.clock.now(),
        )

        requests: list[OrderRequest] = []
        for leg in legs:
            strike = atm + interval * leg.strike_steps
            try:
                instrument = self.registry.get_option(underlying, expiry, strike, leg.option_type)
            except InstrumentNotFoundError as e:
                raise StrategyError(
                    f"Leg {leg.option_type.value} {strike} unavailable for {strategy.name}",
                    {"strategy_type": strategy_type.value, "expiry": expiry.isoformat()},
                ) from e
            requests.append(
                OrderRequest(
                    symbol=instrument.symbol,
                    side=leg.side,
                    quantity=lots * lot_size * leg.ratio,
                    order_type=OrderType.MARKET,
                    strategy_id=strategy.id,
                    tag=strategy_type.value,
                )
            )

        self._strategies[strategy.id] = strategy
        logger.info(
            f"Strategy created: {strategy.name} {underlying.value} {expiry.isoformat()} "
            f"ATM {atm} x{lots} lot(s), {len(requests)} leg(s)"
        )
        self._publish(EventType.STRATEGY_CREATED, {"strategy": strategy})
        return strategy, requests

    def find_strangle_by_premium(self, underlying: Underlying, capital: Decimal) -> StrangleCandidate | None:
        """
        Pick the CE and PE of the rollover monthly expiry whose LTP is closest
        to the per-leg premium target. Contracts without a traded price are
        skipped. Returns None when either side has no priced contract.
        """
        if self.market_state is None:
            raise StrategyError("Premium selection needs market data")

        expiry = rollover_expiry(self.registry.expiries(underlying), self.clock.now().date(), self.config.rollover_day)
        if expiry is None:
            logger.warning(f"No expiries listed for {underlying.value}")
            return None

        target = target_premium_per_leg(capital, self.registry.lot_size(underlying), self.config.premium_capital_pct)
        best: dict[InstrumentType, tuple[Decimal, Instrument, Decimal]] = {}
        for instrument in sorted(self.registry.options(underlying, expiry), key=lambda i: i.strike or ZERO):
            ltp = self.market_state.get_ltp(instrument.token)
            if ltp <= 0:
                continue
            diff = abs(ltp - target)
            current = best.get(instrument.instrument_type)
            if current is None or diff < current[0]:
                best[instrument.instrument_type] = (diff, instrument, ltp)

        if CE not in best or PE not in best:
            logger.warning(f"No priced CE/PE pair for {underlying.value} {expiry.isoformat()}")
            return None

        _, ce, ce_ltp = best[CE]
        _, pe, pe_ltp = best[PE]
        logger.info(
            f"Strangle candidate {underlying.value} {expiry.isoformat()}: target {target:.2f}/leg, "
            f"CE {ce.strike} @ {ce_ltp}, PE {pe.strike} @ {pe_ltp}"
        )
        return StrangleCandidate(ce=ce, pe=pe, ce_ltp=ce_ltp, pe_ltp=pe_ltp, target_premium=target, expiry=expiry)

    def strangle_legs(self, candidate: StrangleCandidate, spot: Decimal) -> list[StrategyLeg]:
        """Express a candidate as short legs offset from the ATM strike for spot."""
        underlying = candidate.ce.underlying
        atm = self.registry.atm_strike(underlying, spot)
        interval = self.registry.strike_interval(underlying)
        return [
            StrategyLeg(option_type, int((instrument.strike - atm) / interval), SELL)  # type: ignore[operator]
            for option_type, instrument in ((CE, candidate.ce), (PE, candidate.pe))
        ]

    def exit_requests(self, strategy_id: str, reason: ExitReason = ExitReason.MANUAL) -> list[OrderRequest]:
        """MARKET orders that flatten every open position of a strategy."""
        strategy = self.require_strategy(strategy_id)
        requests = []
        for position in self._open_positions(strategy):
            requests.append(
                OrderRequest(
                    symbol=position.symbol,
                    side=SELL if position.side.sign > 0 else BUY,
                    quantity=position.quantity,
                    strategy_id=strategy.id,
                    tag=f"{strategy.strategy_type.value}_EXIT",
                    exit_reason=reason,
                )
            )
        return requests

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    def link_order(self, strategy_id: str, order_id: str) -> None:
        strategy = self.require_strategy(strategy_id)
        if order_id not in strategy.order_ids:
            strategy.order_ids.append(order_id)

    def link_position(self, strategy_id: str, position_id: str) -> None:
        strategy = self.require_strategy(strategy_id)
        if position_id not in strategy.position_ids:
            strategy.position_ids.append(position_id)
            logger.debug(f"Position {position_id} linked to strategy {strategy.name}")

    def _on_position_event(self, event: Event) -> None:
        position: Position = event.payload["position"]
        if position.strategy_id is None:
            return
        strategy = self._strategies.get(position.strategy_id)
        if strategy is None:
            return

        self.link_position(strategy.id, position.id)
        if event.type == EventType.POSITION_CLOSED:
            self._closed_leg_pnl[position.id] = self._position_realized(position.id)
            self._refresh(strategy)
            self._check_closed(strategy)

    # ------------------------------------------------------------------
    # P&L
    # ------------------------------------------------------------------

    def _open_positions(self, strategy: Strategy) -> list[Position]:
        positions = (self.position_manager.get_position(pid) for pid in strategy.position_ids)
        return [p for p in positions if p is not None]

    def _position_realized(self, position_id: str) -> Decimal:
        return sum((t.pnl_impact for t in self.position_manager.get_trades_for_position(position_id)), ZERO)

    def _refresh(self, strategy: Strategy) -> None:
        # Closed legs use the figure captured at close; their trades may since be pruned.
        strategy.realized_pnl = self._restored_realized.get(strategy.id, ZERO) + sum(
            (
                self._closed_leg_pnl[pid] if pid in self._closed_leg_pnl else self._position_realized(pid)
                for pid in strategy.position_ids
            ),
            ZERO,
        )
        strategy.unrealized_pnl = sum((p.unrealized_pnl for p in self._open_positions(strategy)), ZERO)

    def _check_closed(self, strategy: Strategy) -> None:
        if strategy.status == StrategyStatus.CLOSED or not strategy.position_ids:
            return
        if self._open_positions(strategy):
            return

        strategy.status = StrategyStatus.CLOSED
        strategy.exit_time = self.clock.now()
        strategy.unrealized_pnl = ZERO
        for position_id in strategy.position_ids:
            self._closed_leg_pnl.pop(position_id, None)
        self._restored_realized.pop(strategy.id, None)
        logger.info(f"Strategy closed: {strategy.name} realized {format_inr(strategy.realized_pnl)}")
        self._publish(EventType.STRATEGY_CLOSED, {"strategy": strategy})

    def update_pnl(self) -> None:
        """Roll position P&L up into every active strategy."""
        for strategy in self.get_active_strategies():
            self._refresh(strategy)
            self._check_closed(strategy)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_strategy(self, strategy_id: str) -> Strategy | None:
        return self._strategies.get(strategy_id)

    def require_strategy(self, strategy_id: str) -> Strategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise StrategyError(f"Strategy not found: {strategy_id}")
        return strategy

    def get_all_strategies(self) -> list[Strategy]:
        return list(self._strategies.values())

    def get_active_strategies(self) -> list[Strategy]:
        return [s for s in self._strategies.values() if s.status == StrategyStatus.ACTIVE]

    def restore(self, strategies: list[Strategy]) -> None:
        """
        Reload active strategies from a snapshot, replacing the current set.

        Only legs still in the position book stay linked; a strategy with none
        left is dropped. Realized P&L at snapshot time becomes the baseline for
        later roll-ups since the trades behind it are not restored.
        """
        self.clear()
        for strategy in strategies:
            if strategy.status != StrategyStatus.ACTIVE:
                continue
            open_ids = [pid for pid in strategy.position_ids if self.position_manager.get_position(pid)]
            if not open_ids:
                continue
            strategy.position_ids = open_ids
            self._strategies[strategy.id] = strategy
            self._restored_realized[strategy.id] = strategy.realized_pnl
        logger.info(f"Restored {len(self._strategies)} active strategies")

    def clear(self) -> None:
        self._strategies.clear()
        self._closed_leg_pnl.clear()
        self._restored_realized.clear()

    def _publish(self, event_type: EventType, payload: dict[str, object]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, payload)
