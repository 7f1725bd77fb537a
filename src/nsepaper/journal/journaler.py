"""Trade journal: every position's entry and exit, with performance analytics."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import sqlite3
from collections.abc import Awaitable
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from nsepaper.broker.models import Order, Position, Trade
from nsepaper.config_loader import AppConfig
from nsepaper.constants import ExitReason, InstrumentType, PositionSide, Underlying
from nsepaper.data.market_state import MarketState
from nsepaper.errors import JournalError
from nsepaper.events import Event, EventBus, EventType
from nsepaper.journal.models import (
    SINGLE_LEG,
    JournalTrade,
    MonthlyPnL,
    PerformanceStats,
    TradeExit,
    TradeStatus,
    UnderlyingStats,
)
from nsepaper.journal.schema import SCHEMA_STATEMENTS
from nsepaper.numeric import format_inr
from nsepaper.position.strategy_aggregator import StrategyAggregator
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
SECONDS_PER_DAY = 86400

_SELECT = "SELECT * FROM trades"
_NEWEST_FIRST = "ORDER BY entry_time DESC, id DESC"


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def days_held(entry: datetime, exit_: datetime) -> int:
    """Whole days a trade was held, rounded up."""
    return math.ceil((exit_ - entry).total_seconds() / SECONDS_PER_DAY)


class TradeJournal:
    """
    Persists one row per position to SQLite.

    Rows are opened from POSITION_OPENED and closed from POSITION_CLOSED.
    Event data is captured when the event is published; the database write
    happens afterwards on a single worker thread, so writes keep publish order.
    Nothing is written until a run has been started.
    """

    def __init__(
        self,
        db_path: str | Path,
        market_state: MarketState | None = None,
        strategies: StrategyAggregator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db_path = str(db_path)
        self.market_state = market_state
        self.strategies = strategies
        self.clock = clock or SystemClock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="journal")
        self._event_bus: EventBus | None = None
        self.run_id: int | None = None

    async def _run(self, fn: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file and schema."""
        await self._run(self._init_db_sync)

    def _init_db_sync(self) -> None:
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("PRAGMA foreign_keys = ON;")
                for stmt in SCHEMA_STATEMENTS:
                    conn.execute(stmt)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to initialize journal DB: {e}", exc_info=True)
            raise

    async def start_run(self, config: AppConfig) -> None:
        """Start a new logging run session."""
        self.run_id = await self._run(self._insert_run_sync, config)
        logger.info(f"Journal run started: ID {self.run_id}")

    def _insert_run_sync(self, config: AppConfig) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO runs (start_time, config_json, initial_capital) VALUES (?, ?, ?)",
                (
                    self.clock.now().isoformat(),
                    json.dumps(config.model_dump(mode="json"), default=_json_default),
                    str(config.risk.initial_capital),
                ),
            )
            val = cur.lastrowid
            conn.commit()
            if val is None:
                raise JournalError("Failed to get run_id")
            return val

    def attach(self, event_bus: EventBus) -> None:
        """Record positions as they open and close on this bus."""
        event_bus.subscribe(EventType.POSITION_OPENED, self._on_position_opened)
        event_bus.subscribe(EventType.POSITION_CLOSED, self._on_position_closed)
        self._event_bus = event_bus

    async def close(self) -> None:
        """Stamp the run end time and stop the worker."""
        if self._event_bus is not None:
            self._event_bus.unsubscribe(EventType.POSITION_OPENED, self._on_position_opened)
            self._event_bus.unsubscribe(EventType.POSITION_CLOSED, self._on_position_closed)
            self._event_bus = None
        if self.run_id:
            await self._run(self._close_run_sync, self.run_id)
            self.run_id = None
        self._executor.shutdown(wait=True)

    def _close_run_sync(self, run_id: int) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("UPDATE runs SET end_time = ? WHERE id = ?", (self.clock.now().isoformat(), run_id))
            conn.commit()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _spot(self, underlying: Underlying) -> Decimal | None:
        if self.market_state is None:
            return None
        spot = self.market_state.get_spot_price(underlying)
        return spot if spot > 0 else None

    def _strategy_type(self, position: Position) -> str:
        if position.strategy_id and self.strategies is not None:
            strategy = self.strategies.get_strategy(position.strategy_id)
            if strategy is not None:
                return strategy.strategy_type.value
        return SINGLE_LEG

    def _on_position_opened(self, event: Event) -> Awaitable[None] | None:
        position: Position = event.payload["position"]
        entry = JournalTrade(
            trade_id=position.id,
            strategy_id=position.strategy_id,
            strategy_type=self._strategy_type(position),
            underlying=position.underlying,
            symbol=position.symbol,
            instrument_type=position.instrument_type,
            strike=position.strike,
            expiry=position.expiry,
            side=position.side,
            quantity=position.quantity,
            entry_time=position.opened_at,
            entry_price=position.avg_price,
            entry_spot=self._spot(position.underlying),
        )
        return self.log_entry(entry)

    def _on_position_closed(self, event: Event) -> Awaitable[None] | None:
        position: Position = event.payload["position"]
        closing: Trade = event.payload["closing_trade"]
        order: Order | None = event.payload.get("order")
        reason = order.request.exit_reason if order is not None else None
        exit_ = TradeExit(
            exit_time=closing.timestamp,
            exit_price=closing.price,
            exit_reason=reason or ExitReason.MANUAL,
            realized_pnl=position.realized_pnl,
            exit_spot=self._spot(position.underlying),
        )
        return self.log_exit(position.id, exit_)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def log_entry(self, trade: JournalTrade) -> None:
        """Record a newly opened trade."""
        if self.run_id is None:
            return
        await self._run(self._log_entry_sync, trade, self.run_id)

    def _log_entry_sync(self, t: JournalTrade, run_id: int) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO trades (
                    trade_id, run_id, strategy_id, strategy_type, underlying, symbol,
                    instrument_type, strike, expiry, side, quantity,
                    entry_time, entry_price, entry_spot, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    t.trade_id,
                    run_id,
                    t.strategy_id,
                    t.strategy_type,
                    t.underlying.value,
                    t.symbol,
                    t.instrument_type.value,
                    _text(t.strike),
                    t.expiry.isoformat() if t.expiry else None,
                    t.side.value,
                    t.quantity,
                    t.entry_time.isoformat(),
                    str(t.entry_price),
                    _text(t.entry_spot),
                    TradeStatus.OPEN.value,
                ),
            )
            conn.commit()
        logger.info(f"Journal entry: {t.side.value} {t.quantity} {t.symbol} @ {t.entry_price}")

    async def log_exit(self, trade_id: str, exit_: TradeExit) -> None:
        """Close a journal trade; unknown ids are logged and skipped."""
        if self.run_id is None:
            return
        await self._run(self._log_exit_sync, trade_id, exit_)

    def _log_exit_sync(self, trade_id: str, e: TradeExit) -> None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT entry_time FROM trades WHERE trade_id = ?", (trade_id,)).fetchone()
            if row is None:
                logger.warning(f"Journal trade not found for exit: {trade_id}")
                return
            held = days_held(datetime.fromisoformat(row[0]), e.exit_time)
            conn.execute(
                """
                UPDATE trades SET
                    exit_time = ?, exit_price = ?, exit_spot = ?, exit_reason = ?,
                    realized_pnl = ?, days_held = ?, status = ?
                WHERE trade_id = ?
                """,
                (
                    e.exit_time.isoformat(),
                    str(e.exit_price),
                    _text(e.exit_spot),
                    e.exit_reason.value,
                    str(e.realized_pnl),
                    held,
                    TradeStatus.CLOSED.value,
                    trade_id,
                ),
            )
            conn.commit()
        logger.info(f"Journal exit: {trade_id} {e.exit_reason.value} realized {format_inr(e.realized_pnl)}")

    async def add_notes(
        self, trade_id: str, notes: str, lessons: str | None = None, rating: int | None = None
    ) -> None:
        """Append notes to a trade; lessons and rating replace earlier values when given."""
        if rating is not None and not 1 <= rating <= 5:
            raise JournalError(f"Rating must be 1-5, got {rating}", {"trade_id": trade_id})
        await self._run(self._add_notes_sync, trade_id, notes, lessons, rating)

    def _add_notes_sync(self, trade_id: str, notes: str, lessons: str | None, rating: int | None) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE trades SET
                    notes = COALESCE(notes || char(10), '') || ?,
                    lessons = COALESCE(?, lessons),
                    rating = COALESCE(?, rating)
                WHERE trade_id = ?
                """,
                (notes, lessons, rating, trade_id),
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _fetch_sync(self, sql: str, params: tuple[Any, ...] = ()) -> list[JournalTrade]:
        with self._connect() as conn:
            return [self._row_to_trade(row) for row in conn.execute(sql, params).fetchall()]

    async def get_trade(self, trade_id: str) -> JournalTrade | None:
        rows = await self._run(self._fetch_sync, f"{_SELECT} WHERE trade_id = ?", (trade_id,))
        return rows[0] if rows else None

    async def get_open_trades(self) -> list[JournalTrade]:
        return await self._run(
            self._fetch_sync, f"{_SELECT} WHERE status = ? {_NEWEST_FIRST}", (TradeStatus.OPEN.value,)
        )

    async def get_recent_trades(self, limit: int = 10) -> list[JournalTrade]:
        return await self._run(self._fetch_sync, f"{_SELECT} {_NEWEST_FIRST} LIMIT ?", (limit,))

    async def get_trades_by_underlying(self, underlying: Underlying, limit: int = 20) -> list[JournalTrade]:
        return await self._run(
            self._fetch_sync,
            f"{_SELECT} WHERE underlying = ? {_NEWEST_FIRST} LIMIT ?",
            (underlying.value, limit),
        )

    async def get_performance_stats(self, recent: int = 5) -> PerformanceStats:
        trades = await self._run(self._fetch_sync, f"{_SELECT} {_NEWEST_FIRST}")
        return compute_stats(trades, recent)

    async def get_monthly_pnl(self, months: int = 12) -> list[MonthlyPnL]:
        """Realized P&L per exit month, newest month first."""
        closed = await self._run(
            self._fetch_sync, f"{_SELECT} WHERE status = ? AND exit_time IS NOT NULL", (TradeStatus.CLOSED.value,)
        )
        buckets: dict[str, list[Decimal]] = {}
        for trade in closed:
            buckets.setdefault(trade.exit_time.strftime("%Y-%m"), []).append(trade.realized_pnl or ZERO)
        return [
            MonthlyPnL(month=month, pnl=sum(values, ZERO), trades=len(values))
            for month, values in sorted(buckets.items(), reverse=True)[:months]
        ]

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> JournalTrade:
        return JournalTrade(
            trade_id=row["trade_id"],
            strategy_id=row["strategy_id"],
            strategy_type=row["strategy_type"],
            underlying=Underlying(row["underlying"]),
            symbol=row["symbol"],
            instrument_type=InstrumentType(row["instrument_type"]),
            strike=_dec(row["strike"]),
            expiry=date.fromisoformat(row["expiry"]) if row["expiry"] else None,
            side=PositionSide(row["side"]),
            quantity=row["quantity"],
            entry_time=datetime.fromisoformat(row["entry_time"]),
            entry_price=Decimal(row["entry_price"]),
            entry_spot=_dec(row["entry_spot"]),
            exit_time=datetime.fromisoformat(row["exit_time"]) if row["exit_time"] else None,
            exit_price=_dec(row["exit_price"]),
            exit_spot=_dec(row["exit_spot"]),
            exit_reason=ExitReason(row["exit_reason"]) if row["exit_reason"] else None,
            realized_pnl=_dec(row["realized_pnl"]),
            days_held=row["days_held"],
            notes=row["notes"],
            lessons=row["lessons"],
            rating=row["rating"],
            status=TradeStatus(row["status"]),
        )


def _win_rate(pnls: list[Decimal]) -> Decimal:
    if not pnls:
        return ZERO
    return Decimal(sum(1 for p in pnls if p > 0)) / len(pnls) * HUNDRED


def compute_stats(trades: list[JournalTrade], recent: int = 5) -> PerformanceStats:
    """Performance statistics over journal trades ordered newest first."""
    closed = [t for t in trades if t.is_closed]
    pnls = [t.realized_pnl or ZERO for t in closed]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    total_wins = sum(wins, ZERO)
    total_losses = abs(sum(losses, ZERO))

    if total_losses > 0:
        profit_factor = total_wins / total_losses
    else:
        profit_factor = Decimal("Infinity") if total_wins > 0 else ZERO

    by_underlying = {}
    for underlying in Underlying:
        legs = [t.realized_pnl or ZERO for t in closed if t.underlying == underlying]
        by_underlying[underlying] = UnderlyingStats(trades=len(legs), pnl=sum(legs, ZERO), win_rate=_win_rate(legs))

    streak = 0
    for trade in sorted(closed, key=lambda t: t.exit_time, reverse=True):
        pnl = trade.realized_pnl or ZERO
        if pnl > 0:
            if streak < 0:
                break
            streak += 1
        elif pnl < 0:
            if streak > 0:
                break
            streak -= 1

    return PerformanceStats(
        total_trades=len(trades),
        open_trades=sum(1 for t in trades if t.status == TradeStatus.OPEN),
        closed_trades=len(closed),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=_win_rate(pnls),
        total_pnl=sum(pnls, ZERO),
        avg_win=total_wins / len(wins) if wins else ZERO,
        avg_loss=total_losses / len(losses) if losses else ZERO,
        largest_win=max(wins) if wins else ZERO,
        largest_loss=min(losses) if losses else ZERO,
        profit_factor=profit_factor,
        avg_days_held=Decimal(sum(t.days_held or 0 for t in closed)) / len(closed) if closed else ZERO,
        by_underlying=by_underlying,
        last_trades=trades[:recent],
        current_streak=streak,
    )
