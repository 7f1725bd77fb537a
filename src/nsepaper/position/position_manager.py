"""Position ledger: applies fills, marks to market and aggregates Greeks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from nsepaper.broker.models import Fill, Order, Position, Trade, generate_id
from nsepaper.config_loader import PricingConfig
from nsepaper.constants import OrderSide, OrderStatus, PositionSide, Underlying
from nsepaper.data.market_data import Greeks
from nsepaper.data.market_state import MarketState
from nsepaper.errors import IVCalculationError, PositionError, PositionNotFoundError
from nsepaper.events import EventBus, EventType
from nsepaper.numeric import format_inr, weighted_average
from nsepaper.pricing.black_scholes import BSParams, greeks
from nsepaper.pricing.iv_calculator import implied_volatility
from nsepaper.time.clock import Clock, SystemClock
from nsepaper.time.session_manager import SessionManager

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
FALLBACK_IV = Decimal("0.20")
MAX_CLOSED_POSITIONS = 1000


@dataclass(frozen=True)
class AggregatePnL:
    realized: Decimal
    unrealized: Decimal
    position_count: int
    trade_count: int

    @property
    def total(self) -> Decimal:
        return self.realized + self.unrealized


@dataclass(frozen=True)
class NetGreeks:
    delta: Decimal = ZERO
    gamma: Decimal = ZERO
    theta: Decimal = ZERO
    vega: Decimal = ZERO


class PositionManager:
    """
    Net positions keyed by symbol.

    Quantity is always non-negative with the direction carried by side. A
    position that returns to zero is removed after its closing event is
    published. Realized P&L for the session is the sum of all trade impacts,
    so it survives position removal and flips.

    Closed positions are kept for lookups up to max_closed; the oldest are
    pruned together with their trades once the cap is exceeded.
    """

    def __init__(
        self,
        market_state: MarketState,
        session: SessionManager,
        event_bus: EventBus | None = None,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
        max_closed: int = MAX_CLOSED_POSITIONS,
    ) -> None:
        self.market_state = market_state
        self.session = session
        self.event_bus = event_bus
        self.pricing = pricing or PricingConfig()
        self.clock = clock or SystemClock()
        self.max_closed = max(1, max_closed)

        self._positions: dict[str, Position] = {}
        self._by_symbol: dict[str, str] = {}
        self._trades: dict[str, Trade] = {}
        self._closed: dict[str, Position] = {}
        self._trade_count = 0
        self._realized = ZERO

    def __len__(self) -> int:
        return len(self._positions)

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def process_order_fill(self, order: Order, fill: Fill | None = None) -> Position:
        """
        Apply an order's execution and return the affected position.

        With a fill, only that fill is applied; without one, the order's whole
        filled quantity at its average price is applied. The returned position
        may already be closed (quantity 0) and removed from the book.
        """
        trade = self.apply_fill(order, fill)
        return self._positions.get(trade.position_id) or self._closed[trade.position_id]

    def apply_fill(self, order: Order, fill: Fill | None = None) -> Trade:
        """Apply one execution and return the resulting ledger trade."""
        if order.status not in (OrderStatus.FILLED, OrderStatus.PARTIAL):
            raise PositionError(f"Order {order.id} has no fills to apply", {"status": order.status.value})

        if fill is not None:
            quantity, price, slippage = fill.quantity, fill.price, fill.slippage
        else:
            quantity = order.filled_qty
            price = order.avg_fill_price or ZERO
            slippage = sum((f.slippage for f in order.fills), ZERO)

        if quantity <= 0:
            raise PositionError(f"Fill quantity must be positive for order {order.id}")

        existing_id = self._by_symbol.get(order.symbol)
        position = self._positions.get(existing_id) if existing_id else None

        if position is None:
            position = self._open(order, quantity, price)
            pnl_impact = ZERO
            event = EventType.POSITION_OPENED
        else:
            pnl_impact = self._update(position, order.side, quantity, price)
            event = EventType.POSITION_CLOSED if position.quantity == 0 else EventType.POSITION_UPDATED

        trade = Trade(
            id=generate_id("trd_"),
            order_id=order.id,
            position_id=position.id,
            symbol=order.symbol,
            side=order.side,
            quantity=quantity,
            price=price,
            slippage=slippage,
            timestamp=self.clock.now(),
            pnl_impact=pnl_impact,
        )
        self._trades[trade.id] = trade
        self._trade_count += 1
        position.trade_ids.append(trade.id)
        self._realized += pnl_impact

        if event == EventType.POSITION_CLOSED:
            self._positions.pop(position.id, None)
            self._by_symbol.pop(position.symbol, None)
            self._closed[position.id] = position
            logger.info(f"Position closed: {position.symbol} realized {format_inr(position.realized_pnl)}")
            self._publish(event, {"position": position, "closing_trade": trade, "order": order})
            self._prune_closed()
        elif event == EventType.POSITION_OPENED:
            logger.info(
                f"Position opened: {position.side.value} {position.quantity} {position.symbol} "
                f"@ {position.avg_price}"
            )
            self._publish(event, {"position": position, "trade": trade})
        else:
            logger.info(
                f"Position updated: {position.side.value} {position.quantity} {position.symbol} "
                f"@ {position.avg_price}"
            )
            self._publish(event, {"position": position, "trade": trade})

        return trade

    def _open(self, order: Order, quantity: int, price: Decimal) -> Position:
        now = self.clock.now()
        position = Position(
            id=generate_id("pos_"),
            symbol=order.symbol,
            token=order.token,
            underlying=order.underlying,
            instrument_type=order.instrument_type,
            strike=order.strike,
            expiry=order.expiry,
            side=PositionSide.LONG if order.side == OrderSide.BUY else PositionSide.SHORT,
            quantity=quantity,
            avg_price=price,
            current_price=price,
            opened_at=now,
            updated_at=now,
            strategy_id=order.request.strategy_id,
        )
        self._positions[position.id] = position
        self._by_symbol[position.symbol] = position.id
        return position

    def _update(self, position: Position, side: OrderSide, quantity: int, price: Decimal) -> Decimal:
        """Mutate position for a fill; returns realized P&L from any reduction."""
        adding = (position.side == PositionSide.LONG) == (side == OrderSide.BUY)
        position.updated_at = self.clock.now()

        if adding:
            position.avg_price = weighted_average(
                [(position.avg_price, position.quantity), (price, quantity)]
            )
            position.quantity += quantity
            return ZERO

        close_qty = min(quantity, position.quantity)
        remainder = quantity - close_qty
        pnl = (price - position.avg_price) * close_qty * position.side.sign

        position.realized_pnl += pnl
        position.quantity -= close_qty

        if remainder > 0:
            position.side = PositionSide.SHORT if position.side == PositionSide.LONG else PositionSide.LONG
            position.quantity = remainder
            position.avg_price = price
            position.realized_pnl = ZERO
            position.unrealized_pnl = ZERO
            position.greeks = None
        elif position.quantity == 0:
            position.unrealized_pnl = ZERO
        return pnl

    # ------------------------------------------------------------------
    # Mark to market
    # ------------------------------------------------------------------

    def update_market_prices(self) -> None:
        """Re-mark every position from the market state; missing data is skipped."""
        for position in self._positions.values():
            state = self.market_state.get_by_token(position.token)
            if state is None:
                continue

            position.current_price = state.mid
            position.unrealized_pnl = (position.current_price - position.avg_price) * position.quantity * position.side.sign

            if position.is_option and position.strike is not None and position.expiry is not None:
                spot = self.market_state.get_spot_price(position.underlying)
                if spot > 0 and state.tick.ltp > 0:
                    position.greeks = self._position_greeks(position, spot, state.tick.ltp, position.expiry)
                    self.market_state.update_greeks(position.token, position.greeks)

            position.updated_at = self.clock.now()

    def _position_greeks(self, position: Position, spot: Decimal, price: Decimal, expiry: date) -> Greeks:
        t = self.session.time_to_expiry_years(expiry)
        try:
            iv = implied_volatility(
                price, spot, position.strike, t, position.instrument_type, config=self.pricing  # type: ignore[arg-type]
            )
        except IVCalculationError as e:
            logger.debug(f"IV solve failed for {position.symbol}: {e}")
            iv = FALLBACK_IV
        if iv <= 0:
            iv = FALLBACK_IV

        return greeks(
            BSParams(
                spot=spot,
                strike=position.strike,  # type: ignore[arg-type]
                time_to_expiry=t,
                volatility=iv,
                option_type=position.instrument_type,
                risk_free_rate=self.pricing.risk_free_rate,
            )
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def require_position(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(f"Position not found: {position_id}")
        return position

    def get_position_by_symbol(self, symbol: str) -> Position | None:
        position_id = self._by_symbol.get(symbol)
        return self._positions.get(position_id) if position_id else None

    def get_all_positions(self) -> list[Position]:
        return list(self._positions.values())

    def get_positions_for_underlying(self, underlying: Underlying) -> list[Position]:
        return [p for p in self._positions.values() if p.underlying == underlying]

    def get_positions_for_expiry(self, expiry: date) -> list[Position]:
        return [p for p in self._positions.values() if p.expiry == expiry]

    def get_trade(self, trade_id: str) -> Trade | None:
        return self._trades.get(trade_id)

    def get_all_trades(self) -> list[Trade]:
        return list(self._trades.values())

    def get_trades_for_position(self, position_id: str) -> list[Trade]:
        return [t for t in self._trades.values() if t.position_id == position_id]

    def is_closed(self, position_id: str) -> bool:
        return position_id in self._closed

    def get_aggregate_pnl(self) -> AggregatePnL:
        unrealized = sum((p.unrealized_pnl for p in self._positions.values()), ZERO)
        return AggregatePnL(
            realized=self._realized,
            unrealized=unrealized,
            position_count=len(self._positions),
            trade_count=self._trade_count,
        )

    def get_net_greeks(self) -> NetGreeks:
        delta = gamma = theta = vega = ZERO
        for position in self._positions.values():
            if position.greeks is None:
                continue
            signed = position.signed_quantity
            delta += position.greeks.delta * signed
            gamma += position.greeks.gamma * signed
            theta += position.greeks.theta * signed
            vega += position.greeks.vega * signed
        return NetGreeks(delta=delta, gamma=gamma, theta=theta, vega=vega)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def restore(self, positions: list[Position], realized: Decimal = ZERO) -> None:
        """Load positions from a snapshot, replacing the current book and the session realized P&L."""
        self.clear()
        self._realized = realized
        for position in positions:
            if position.quantity <= 0:
                continue
            self._positions[position.id] = position
            self._by_symbol[position.symbol] = position.id
        logger.info(f"Restored {len(self._positions)} position(s)")

    def reset_daily(self) -> None:
        """Start a new day's realized P&L; open positions carry over with zero realized."""
        self._realized = ZERO
        for position in self._closed.values():
            self._drop_trades(position)
        self._closed.clear()
        self._trade_count = 0
        for position in self._positions.values():
            position.realized_pnl = ZERO

    def clear(self) -> None:
        self._positions.clear()
        self._by_symbol.clear()
        self._trades.clear()
        self._closed.clear()
        self._realized = ZERO
        self._trade_count = 0

    def _prune_closed(self) -> None:
        while len(self._closed) > self.max_closed:
            oldest = next(iter(self._closed))
            self._drop_trades(self._closed.pop(oldest))

    def _drop_trades(self, position: Position) -> None:
        for trade_id in position.trade_ids:
            self._trades.pop(trade_id, None)

    def _publish(self, event_type: EventType, payload: dict[str, object]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, payload)
