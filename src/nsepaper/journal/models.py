"""Journal Models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from nsepaper.constants import ExitReason, InstrumentType, PositionSide, Underlying

ZERO = Decimal("0")

SINGLE_LEG = "SINGLE_LEG"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


@dataclass
class JournalTrade:
    """One position from open to close, as recorded in the journal."""

    trade_id: str
    strategy_type: str
    underlying: Underlying
    symbol: str
    instrument_type: InstrumentType
    side: PositionSide
    quantity: int
    entry_time: datetime
    entry_price: Decimal
    strategy_id: str | None = None
    strike: Decimal | None = None
    expiry: date | None = None
    entry_spot: Decimal | None = None
    exit_time: datetime | None = None
    exit_price: Decimal | None = None
    exit_spot: Decimal | None = None
    exit_reason: ExitReason | None = None
    realized_pnl: Decimal | None = None
    days_held: int | None = None
    notes: str | None = None
    lessons: str | None = None
    rating: int | None = None
    status: TradeStatus = TradeStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == TradeStatus.CLOSED


@dataclass(frozen=True)
class TradeExit:
    """Exit details applied to an open journal trade."""

    exit_time: datetime
    exit_price: Decimal
    exit_reason: ExitReason
    realized_pnl: Decimal
    exit_spot: Decimal | None = None


@dataclass(frozen=True)
class UnderlyingStats:
    trades: int = 0
    pnl: Decimal = ZERO
    win_rate: Decimal = ZERO


@dataclass(frozen=True)
class MonthlyPnL:
    month: str
    pnl: Decimal
    trades: int


@dataclass
class PerformanceStats:
    """
    Aggregate results over the journal.

    win_rate is a percentage of closed trades. avg_loss is a positive
    magnitude while largest_loss keeps its sign. profit_factor is infinite
    when there are wins and no losses. current_streak counts consecutive
    wins (positive) or losses (negative) from the most recent exit back.
    """

    total_trades: int = 0
    open_trades: int = 0
    closed_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: Decimal = ZERO
    total_pnl: Decimal = ZERO
    avg_win: Decimal = ZERO
    avg_loss: Decimal = ZERO
    largest_win: Decimal = ZERO
    largest_loss: Decimal = ZERO
    profit_factor: Decimal = ZERO
    avg_days_held: Decimal = ZERO
    by_underlying: dict[Underlying, UnderlyingStats] = field(default_factory=dict)
    last_trades: list[JournalTrade] = field(default_factory=list)
    current_streak: int = 0
