"""Account-level margin state and order admission."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from nsepaper.broker.models import Position
from nsepaper.constants import Underlying
from nsepaper.errors import InsufficientMarginError
from nsepaper.numeric import format_inr
from nsepaper.risk.span_margin import MarginCalculation, MarginCalculator, SpreadAnalysis

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class MarginState:
    """Snapshot of the account's margin position."""

    initial_capital: Decimal
    used_margin: Decimal
    available_margin: Decimal
    pending_order_margin: Decimal
    realized_pnl: Decimal
    unrealized_pnl: Decimal
    spread_benefit: Decimal = ZERO

    @property
    def mtm_pnl(self) -> Decimal:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def net_liquidation(self) -> Decimal:
        return self.initial_capital + self.realized_pnl + self.unrealized_pnl

    @property
    def utilization(self) -> Decimal:
        if self.initial_capital <= 0:
            return ZERO
        return self.used_margin / self.initial_capital


@dataclass
class MarginBreakdown:
    state: MarginState
    by_position: dict[str, MarginCalculation] = field(default_factory=dict)
    spreads: list[SpreadAnalysis] = field(default_factory=list)
    last_update: datetime | None = None


class MarginTracker:
    """
    Tracks used, reserved and available margin.

    Available margin = capital + realized P&L - used - reserved + min(unrealized, 0).
    Unrealized gains never free up margin; unrealized losses always consume it.
    """

    def __init__(self, initial_capital: Decimal, calculator: MarginCalculator | None = None) -> None:
        self.initial_capital = initial_capital
        self.calculator = calculator or MarginCalculator()

        self.used_margin = ZERO
        self.realized_pnl = ZERO
        self.unrealized_pnl = ZERO
        self.spread_benefit = ZERO
        self._reservations: dict[str, Decimal] = {}
        self._by_position: dict[str, MarginCalculation] = {}
        self._spreads: list[SpreadAnalysis] = []
        self._last_update: datetime | None = None

        logger.info(f"Margin tracker initialized with capital {format_inr(initial_capital)}")

    @property
    def pending_order_margin(self) -> Decimal:
        return sum(self._reservations.values(), ZERO)

    @property
    def available_margin(self) -> Decimal:
        return (
            self.initial_capital
            + self.realized_pnl
            - self.used_margin
            - self.pending_order_margin
            + min(self.unrealized_pnl, ZERO)
        )

    def update(
        self,
        positions: list[Position],
        spots: dict[Underlying, Decimal],
        ivs: dict[int, Decimal],
        days_to_expiry: dict[str, int],
        now: datetime | None = None,
    ) -> MarginState:
        """Recompute used margin and unrealized P&L from the open positions."""
        open_positions = [p for p in positions if p.quantity > 0]
        result = self.calculator.portfolio_margin(open_positions, spots, ivs, days_to_expiry)

        self.used_margin = result.total_margin
        self.spread_benefit = result.spread_benefit
        self._by_position = result.by_position
        self._spreads = result.spreads
        self.unrealized_pnl = sum((p.unrealized_pnl for p in open_positions), ZERO)
        self._last_update = now

        for position in open_positions:
            margin = result.by_position.get(position.id)
            position.margin = margin.net_margin if margin else ZERO

        return self.get_state()

    def get_state(self) -> MarginState:
        return MarginState(
            initial_capital=self.initial_capital,
            used_margin=self.used_margin,
            available_margin=self.available_margin,
            pending_order_margin=self.pending_order_margin,
            realized_pnl=self.realized_pnl,
            unrealized_pnl=self.unrealized_pnl,
            spread_benefit=self.spread_benefit,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def can_place_order(self, required: Decimal, premium_credit: Decimal = ZERO) -> tuple[bool, str | None]:
        """Check whether the net requirement fits in available margin."""
        net_required = max(ZERO, required - premium_credit)
        available = self.available_margin
        if net_required > available:
            return False, (
                f"Insufficient margin. Required: {format_inr(net_required)}, "
                f"Available: {format_inr(available)}"
            )
        return True, None

    def assert_can_place_order(self, required: Decimal, premium_credit: Decimal = ZERO) -> None:
        allowed, reason = self.can_place_order(required, premium_credit)
        if not allowed:
            raise InsufficientMarginError(
                str(max(ZERO, required - premium_credit)), str(self.available_margin), {"reason": reason}
            )

    def reserve(self, order_id: str, amount: Decimal) -> None:
        """Hold margin for an order until it reaches a terminal state."""
        self._reservations[order_id] = max(ZERO, amount)
        logger.debug(
            f"Margin reserved for {order_id}: {format_inr(amount)} "
            f"(pending {format_inr(self.pending_order_margin)})"
        )

    def release(self, order_id: str) -> Decimal:
        """Release an order's reservation; releasing twice is a no-op."""
        amount = self._reservations.pop(order_id, ZERO)
        if amount:
            logger.debug(f"Margin released for {order_id}: {format_inr(amount)}")
        return amount

    def reserved_for(self, order_id: str) -> Decimal:
        return self._reservations.get(order_id, ZERO)

    # ------------------------------------------------------------------
    # Capital
    # ------------------------------------------------------------------

    def add_realized_pnl(self, amount: Decimal) -> None:
        if amount == 0:
            return
        previous = self.realized_pnl
        self.realized_pnl += amount
        logger.info(
            f"Realized P&L {format_inr(amount)}: {format_inr(previous)} -> {format_inr(self.realized_pnl)}"
        )

    def update_capital(self, new_capital: Decimal) -> None:
        logger.info(f"Capital updated: {format_inr(self.initial_capital)} -> {format_inr(new_capital)}")
        self.initial_capital = new_capital

    def reset_daily(self) -> None:
        """Carry realized P&L into capital and start a fresh day."""
        logger.info(
            f"Daily margin reset: realized {format_inr(self.realized_pnl)}, "
            f"unrealized {format_inr(self.unrealized_pnl)}"
        )
        self.initial_capital += self.realized_pnl
        self.realized_pnl = ZERO
        self.unrealized_pnl = ZERO
        self._reservations.clear()
        self._by_position.clear()
        self._spreads = []
        logger.info(f"New day capital {format_inr(self.initial_capital)}")

    def position_margin(self, position_id: str) -> MarginCalculation | None:
        return self._by_position.get(position_id)

    def breakdown(self) -> MarginBreakdown:
        return MarginBreakdown(
            state=self.get_state(),
            by_position=dict(self._by_position),
            spreads=list(self._spreads),
            last_update=self._last_update,
        )
