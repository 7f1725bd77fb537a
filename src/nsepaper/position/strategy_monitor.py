"""Profit target and stop-loss watch over open strategies."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from nsepaper.broker.models import Strategy
from nsepaper.config_loader import StrategyConfig
from nsepaper.constants import ExitReason, StrategyStatus
from nsepaper.errors import PersistenceError
from nsepaper.numeric import format_inr
from nsepaper.persistence.state_store import dumps, loads
from nsepaper.position.strategy_aggregator import StrategyAggregator
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitoredStrategy:
    strategy_id: str
    capital: Decimal
    target: Decimal
    stop_loss: Decimal
    started_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "capital": self.capital,
            "target": self.target,
            "stop_loss": self.stop_loss,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitoredStrategy:
        return cls(
            strategy_id=str(data["strategy_id"]),
            capital=data["capital"],
            target=data["target"],
            stop_loss=data["stop_loss"],
            started_at=data["started_at"],
        )


class StrategyMonitor:
    """
    Watches strategies against a profit target and a stop loss.

    Both thresholds are fixed fractions of the reference capital given when
    the watch starts. The watch list is rewritten to the state file on every
    change so it survives restarts; without a state path it lives in memory
    only. Strategies that are gone or already closed drop off on the next
    check.
    """

    def __init__(
        self,
        strategies: StrategyAggregator,
        config: StrategyConfig | None = None,
        state_path: str | Path | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.strategies = strategies
        self.config = config or StrategyConfig()
        self.state_path = Path(state_path) if state_path is not None else None
        self.clock = clock or SystemClock()
        self._watched: dict[str, MonitoredStrategy] = {}

    def __len__(self) -> int:
        return len(self._watched)

    def watch(self, strategy_id: str, capital: Decimal) -> MonitoredStrategy:
        strategy = self.strategies.require_strategy(strategy_id)
        entry = MonitoredStrategy(
            strategy_id=strategy_id,
            capital=capital,
            target=capital * self.config.target_pct,
            stop_loss=capital * self.config.stop_loss_pct,
            started_at=self.clock.now(),
        )
        self._watched[strategy_id] = entry
        self.save()
        logger.info(
            f"Monitoring {strategy.name}: target {format_inr(entry.target)}, "
            f"stop loss {format_inr(entry.stop_loss)}"
        )
        return entry

    def unwatch(self, strategy_id: str) -> bool:
        if self._watched.pop(strategy_id, None) is None:
            return False
        self.save()
        return True

    def is_watching(self, strategy_id: str) -> bool:
        return strategy_id in self._watched

    def get_watched(self) -> list[MonitoredStrategy]:
        return list(self._watched.values())

    def due_exits(self) -> list[tuple[Strategy, ExitReason]]:
        """Strategies whose total P&L has reached the target or the stop loss."""
        due: list[tuple[Strategy, ExitReason]] = []
        dropped = []
        for strategy_id, entry in self._watched.items():
            strategy = self.strategies.get_strategy(strategy_id)
            if strategy is None or strategy.status == StrategyStatus.CLOSED:
                dropped.append(strategy_id)
                continue

            pnl = strategy.total_pnl
            if pnl >= entry.target:
                logger.info(f"Target hit on {strategy.name}: {format_inr(pnl)}")
                due.append((strategy, ExitReason.TARGET))
            elif pnl <= -entry.stop_loss:
                logger.warning(f"Stop loss hit on {strategy.name}: {format_inr(pnl)}")
                due.append((strategy, ExitReason.STOP_LOSS))

        if dropped:
            for strategy_id in dropped:
                del self._watched[strategy_id]
            logger.info(f"Stopped monitoring {len(dropped)} closed or unknown strategies")
            self.save()
        return due

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Replace the watch list with the saved one; returns how many were loaded."""
        if self.state_path is None or not self.state_path.exists():
            return 0
        try:
            data = loads(self.state_path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise TypeError("monitor state root is not a list")
            entries = [MonitoredStrategy.from_dict(item) for item in data]
        except OSError as e:
            raise PersistenceError(f"Could not read monitor state {self.state_path}: {e}") from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise PersistenceError(
                f"Corrupt monitor state {self.state_path}: {e}", {"path": str(self.state_path)}
            ) from e

        self._watched = {e.strategy_id: e for e in entries}
        if entries:
            logger.info(f"Restored {len(entries)} monitored strategies")
        return len(entries)

    def save(self) -> bool:
        if self.state_path is None:
            return False
        tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(dumps([e.to_dict() for e in self._watched.values()]), encoding="utf-8")
            tmp_path.replace(self.state_path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save monitor state to {self.state_path}: {e}")
            return False
        return True
