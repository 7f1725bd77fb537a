"""Kill switch state tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from nsepaper.constants import KillSwitchReason


@dataclass
class KillSwitchState:
    """Mutable breaker state for a single trading day."""

    # Latest mark-to-market P&L for the day
    daily_pnl: Decimal = Decimal("0")

    # Best and worst P&L seen since the last reset
    peak_pnl: Decimal = Decimal("0")
    trough_pnl: Decimal = Decimal("0")

    triggered: bool = False
    reason: KillSwitchReason | None = None
    message: str = ""
    triggered_at: datetime | None = None
    last_check: datetime | None = None

    # Warning keys already emitted (one per percentage bucket)
    warnings_sent: set[str] = field(default_factory=set)

    def record_pnl(self, pnl: Decimal) -> None:
        self.daily_pnl = pnl
        self.peak_pnl = max(self.peak_pnl, pnl)
        self.trough_pnl = min(self.trough_pnl, pnl)

    @property
    def max_drawdown(self) -> Decimal:
        return self.peak_pnl - self.trough_pnl

    def reset(self) -> None:
        """Clear the latch and the day's counters."""
        self.daily_pnl = Decimal("0")
        self.peak_pnl = Decimal("0")
        self.trough_pnl = Decimal("0")
        self.triggered = False
        self.reason = None
        self.message = ""
        self.triggered_at = None
        self.warnings_sent.clear()
