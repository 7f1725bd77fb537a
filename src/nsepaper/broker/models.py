"""Order, fill, trade, position and strategy models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from nsepaper.constants import (
    TERMINAL_ORDER_STATUSES,
    ExitReason,
    InstrumentType,
    OrderSide,
    OrderStatus,
    OrderType,
    PositionSide,
    StrategyStatus,
    StrategyType,
    Underlying,
)
from nsepaper.data.market_data import Greeks

ZERO = Decimal("0")


def generate_id(prefix: str = "") -> str:
    """Generate unique ID."""
    uid = uuid4().hex[:12]
    return f"{prefix}{uid}" if prefix else uid


@dataclass
class OrderRequest:
    """Request to place an order."""

    symbol: str
    side: OrderSide
    quantity: int
    order_type: OrderType = OrderType.MARKET
    limit_price: Decimal | None = None
    strategy_id: str | None = None
    tag: str | None = None
    exit_reason: ExitReason | None = None


@dataclass(frozen=True)
class Fill:
    """One execution against an order."""

    id: str
    order_id: str
    price: Decimal
    quantity: int
    slippage: Decimal
    latency_ms: int
    timestamp: datetime


@dataclass
class Order:
    """Order state. Mutated only by the fill engine until it reaches a terminal status."""

    id: str
    request: OrderRequest
    token: int
    underlying: Underlying
    instrument_type: InstrumentType
    created_at: datetime
    updated_at: datetime
    strike: Decimal | None = None
    expiry: date | None = None
    status: OrderStatus = OrderStatus.PENDING
    filled_qty: int = 0
    avg_fill_price: Decimal | None = None
    fills: list[Fill] = field(default_factory=list)
    rejection_reason: str | None = None

    @property
    def symbol(self) -> str:
        return self.request.symbol

    @property
    def side(self) -> OrderSide:
        return self.request.side

    @property
    def quantity(self) -> int:
        return self.request.quantity

    @property
    def order_type(self) -> OrderType:
        return self.request.order_type

    @property
    def limit_price(self) -> Decimal | None:
        return self.request.limit_price

    @property
    def tag(self) -> str | None:
        return self.request.tag

    @property
    def remaining_qty(self) -> int:
        return self.request.quantity - self.filled_qty

    @property
    def is_done(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "order_type": self.order_type.value,
            "limit_price": self.limit_price,
            "status": self.status.value,
            "filled_qty": self.filled_qty,
            "avg_fill_price": self.avg_fill_price,
            "rejection_reason": self.rejection_reason,
            "tag": self.tag,
        }


@dataclass(frozen=True)
class Trade:
    """Ledger entry produced by applying a fill to a position."""

    id: str
    order_id: str
    position_id: str
    symbol: str
    side: OrderSide
    quantity: int
    price: Decimal
    slippage: Decimal
    timestamp: datetime
    pnl_impact: Decimal = ZERO


@dataclass
class Position:
    """Net holding in one instrument. quantity is always non-negative."""

    id: str
    symbol: str
    token: int
    underlying: Underlying
    instrument_type: InstrumentType
    side: PositionSide
    quantity: int
    avg_price: Decimal
    opened_at: datetime
    updated_at: datetime
    strike: Decimal | None = None
    expiry: date | None = None
    current_price: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    margin: Decimal = ZERO
    greeks: Greeks | None = None
    strategy_id: str | None = None
    trade_ids: list[str] = field(default_factory=list)

    @property
    def is_short(self) -> bool:
        return self.side == PositionSide.SHORT

    @property
    def signed_quantity(self) -> int:
        return self.quantity * self.side.sign

    @property
    def total_pnl(self) -> Decimal:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def is_option(self) -> bool:
        return self.instrument_type.is_option

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "token": self.token,
            "underlying": self.underlying.value,
            "instrument_type": self.instrument_type.value,
            "strike": self.strike,
            "expiry": self.expiry,
            "side": self.side.value,
            "quantity": self.quantity,
            "avg_price": self.avg_price,
            "current_price": self.current_price,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "opened_at": self.opened_at,
            "updated_at": self.updated_at,
            "strategy_id": self.strategy_id,
            "trade_ids": list(self.trade_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Position:
        return cls(
            id=str(data["id"]),
            symbol=str(data["symbol"]),
            token=int(data["token"]),  # type: ignore[arg-type]
            underlying=Underlying(data["underlying"]),
            instrument_type=InstrumentType(data["instrument_type"]),
            strike=data.get("strike"),  # type: ignore[arg-type]
            expiry=data.get("expiry"),  # type: ignore[arg-type]
            side=PositionSide(data["side"]),
            quantity=int(data["quantity"]),  # type: ignore[arg-type]
            avg_price=data["avg_price"],  # type: ignore[arg-type]
            current_price=data.get("current_price", ZERO),  # type: ignore[arg-type]
            realized_pnl=data.get("realized_pnl", ZERO),  # type: ignore[arg-type]
            unrealized_pnl=data.get("unrealized_pnl", ZERO),  # type: ignore[arg-type]
            opened_at=data["opened_at"],  # type: ignore[arg-type]
            updated_at=data["updated_at"],  # type: ignore[arg-type]
            strategy_id=data.get("strategy_id"),  # type: ignore[arg-type]
            trade_ids=list(data.get("trade_ids", [])),  # type: ignore[call-overload]
        )


@dataclass(frozen=True)
class StrategyLeg:
    """One leg of a template; strike_steps is the offset from ATM in strike intervals."""

    option_type: InstrumentType
    strike_steps: int
    side: OrderSide
    ratio: int = 1


@dataclass
class Strategy:
    """Named group of legs and the positions they opened."""

    id: str
    name: str
    strategy_type: StrategyType
    underlying: Underlying
    expiry: date
    atm_strike: Decimal
    legs: list[StrategyLeg]
    lots: int
    lot_size: int
    entry_time: datetime
    position_ids: list[str] = field(default_factory=list)
    order_ids: list[str] = field(default_factory=list)
    status: StrategyStatus = StrategyStatus.ACTIVE
    exit_time: datetime | None = None
    realized_pnl: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO

    @property
    def total_pnl(self) -> Decimal:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "strategy_type": self.strategy_type.value,
            "underlying": self.underlying.value,
            "expiry": self.expiry,
            "atm_strike": self.atm_strike,
            "legs": [
                {
                    "option_type": leg.option_type.value,
                    "strike_steps": leg.strike_steps,
                    "side": leg.side.value,
                    "ratio": leg.ratio,
                }
                for leg in self.legs
            ],
            "lots": self.lots,
            "lot_size": self.lot_size,
            "entry_time": self.entry_time,
            "position_ids": list(self.position_ids),
            "order_ids": list(self.order_ids),
            "status": self.status.value,
            "realized_pnl": self.realized_pnl,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Strategy:
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            strategy_type=StrategyType(data["strategy_type"]),
            underlying=Underlying(data["underlying"]),
            expiry=data["expiry"],
            atm_strike=data["atm_strike"],
            legs=[
                StrategyLeg(
                    option_type=InstrumentType(leg["option_type"]),
                    strike_steps=int(leg["strike_steps"]),
                    side=OrderSide(leg["side"]),
                    ratio=int(leg.get("ratio", 1)),
                )
                for leg in data.get("legs", [])
            ],
            lots=int(data["lots"]),
            lot_size=int(data["lot_size"]),
            entry_time=data["entry_time"],
            position_ids=list(data.get("position_ids", [])),
            order_ids=list(data.get("order_ids", [])),
            status=StrategyStatus(data.get("status", StrategyStatus.ACTIVE.value)),
            realized_pnl=data.get("realized_pnl", ZERO),
        )
