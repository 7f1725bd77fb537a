"""Portfolio snapshot persistence."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from nsepaper.broker.models import Position, Strategy
from nsepaper.errors import PersistenceError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

_DECIMAL = "$decimal"
_DATE = "$date"
_DATETIME = "$datetime"


@dataclass
class PortfolioSnapshot:
    """State that survives restarts."""

    trading_date: date
    initial_capital: Decimal
    realized_pnl: Decimal = Decimal("0")
    positions: list[Position] = field(default_factory=list)
    strategies: list[Strategy] = field(default_factory=list)
    kill_switch_active: bool = False
    kill_switch_reason: str = ""
    saved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "trading_date": self.trading_date,
            "initial_capital": self.initial_capital,
            "realized_pnl": self.realized_pnl,
            "positions": [p.to_dict() for p in self.positions],
            "strategies": [s.to_dict() for s in self.strategies],
            "kill_switch_active": self.kill_switch_active,
            "kill_switch_reason": self.kill_switch_reason,
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PortfolioSnapshot:
        return cls(
            trading_date=data["trading_date"],
            initial_capital=data["initial_capital"],
            realized_pnl=data.get("realized_pnl", Decimal("0")),
            positions=[Position.from_dict(p) for p in data.get("positions", [])],
            strategies=[Strategy.from_dict(s) for s in data.get("strategies", [])],
            kill_switch_active=bool(data.get("kill_switch_active", False)),
            kill_switch_reason=str(data.get("kill_switch_reason", "")),
            saved_at=data.get("saved_at"),
        )


class SnapshotEncoder(json.JSONEncoder):
    """JSON encoder that tags Decimal, date and datetime values so they decode exactly."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return {_DECIMAL: str(obj)}
        # datetime before date: datetime is a date subclass
        if isinstance(obj, datetime):
            return {_DATETIME: obj.isoformat()}
        if isinstance(obj, date):
            return {_DATE: obj.isoformat()}
        return super().default(obj)


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1:
        if _DECIMAL in obj:
            return Decimal(obj[_DECIMAL])
        if _DATETIME in obj:
            return datetime.fromisoformat(obj[_DATETIME])
        if _DATE in obj:
            return date.fromisoformat(obj[_DATE])
    return obj


def dumps(data: Any) -> str:
    return json.dumps(data, cls=SnapshotEncoder, indent=2)


def loads(text: str) -> Any:
    return json.loads(text, object_hook=_decode_hook)


class StateStore:
    """
    Save and load the portfolio snapshot as a JSON file.

    A missing file is not an error. A file that cannot be parsed raises
    PersistenceError so a corrupt book is never silently replaced. Save
    failures are logged and reported through the return value; in-memory
    state stays authoritative.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> PortfolioSnapshot | None:
        if not self.path.exists():
            logger.info(f"No snapshot at {self.path}; starting fresh")
            return None

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Could not read snapshot {self.path}: {e}") from e

        try:
            data = loads(text)
            if not isinstance(data, dict):
                raise TypeError("snapshot root is not an object")
            snapshot = PortfolioSnapshot.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise PersistenceError(f"Corrupt snapshot {self.path}: {e}", {"path": str(self.path)}) from e

        logger.info(
            f"Restored snapshot from {snapshot.trading_date.isoformat()}: "
            f"{len(snapshot.positions)} position(s), capital {snapshot.initial_capital}"
        )
        return snapshot

    def save(self, snapshot: PortfolioSnapshot) -> bool:
        snapshot.saved_at = snapshot.saved_at or datetime.now()
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(dumps(snapshot.to_dict()), encoding="utf-8")
            tmp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save snapshot to {self.path}: {e}")
            return False

        logger.debug(f"Snapshot saved: {len(snapshot.positions)} position(s)")
        return True

    def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete snapshot {self.path}: {e}")
