"""Automatic risk breaker with forced liquidation."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from nsepaper.broker.models import Position
from nsepaper.config_loader import RiskConfig
from nsepaper.constants import KillSwitchReason
from nsepaper.errors import KillSwitchActiveError
from nsepaper.events import EventBus, EventType
from nsepaper.numeric import format_inr
from nsepaper.risk.limits import KillSwitchState
from nsepaper.risk.margin_tracker import MarginState
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

ForceExitCallback = Callable[[list[Position]], Awaitable[None]]


@dataclass(frozen=True)
class KillSwitchEvent:
    """Result of a kill switch evaluation."""

    triggered: bool
    daily_pnl: Decimal
    margin_utilization: Decimal = ZERO
    reason: KillSwitchReason | None = None
    message: str = ""
    timestamp: datetime | None = None


def _pct(value: Decimal) -> str:
    return f"{(value * HUNDRED).quantize(Decimal('0.01'))}%"


def _bucket(value: Decimal) -> int:
    return int((value * HUNDRED).to_integral_value(rounding=ROUND_FLOOR))


class KillSwitch:
    """
    Evaluates loss and margin limits every cycle.

    Checks run in order: absolute daily loss, percentage daily loss, margin
    utilization. The first breach trips the switch, which stays tripped until
    reset() regardless of later P&L. Warnings fire once per percentage bucket.
    """

    def __init__(
        self,
        config: RiskConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or RiskConfig()
        self.event_bus = event_bus
        self.clock = clock or SystemClock()
        self.state = KillSwitchState()
        self._force_exit: ForceExitCallback | None = None

        logger.info(
            f"Kill switch initialized: max daily loss {format_inr(self.config.max_daily_loss)} "
            f"({_pct(self.config.max_daily_loss_pct)}), margin breach {_pct(self.config.margin_breach_threshold)}"
        )

    def set_force_exit_callback(self, callback: ForceExitCallback) -> None:
        self._force_exit = callback

    @property
    def is_triggered(self) -> bool:
        return self.state.triggered

    def assert_not_triggered(self) -> None:
        if self.state.triggered:
            reason = self.state.reason.value if self.state.reason else "UNKNOWN"
            raise KillSwitchActiveError(reason)

    async def check(self, pnl: Decimal, margin: MarginState, positions: list[Position]) -> KillSwitchEvent:
        """Evaluate limits for this cycle; may force-exit `positions` on a trip."""
        self.state.last_check = self.clock.now()
        self.state.record_pnl(pnl)
        utilization = margin.utilization

        if self.state.triggered:
            return self._current_event(utilization)

        if pnl < -self.config.max_daily_loss:
            return await self._trigger(
                KillSwitchReason.DAILY_LOSS_LIMIT,
                f"Daily loss limit breached. Current: {format_inr(pnl)}, "
                f"Limit: {format_inr(self.config.max_daily_loss)}",
                positions,
                utilization,
            )

        if margin.initial_capital > 0:
            pnl_pct = pnl / margin.initial_capital
            if pnl_pct < -self.config.max_daily_loss_pct:
                return await self._trigger(
                    KillSwitchReason.DAILY_LOSS_LIMIT,
                    f"Daily loss limit breached. Current: {_pct(pnl_pct)}, "
                    f"Limit: -{_pct(self.config.max_daily_loss_pct)}",
                    positions,
                    utilization,
                )

        if utilization > self.config.margin_breach_threshold:
            return await self._trigger(
                KillSwitchReason.MARGIN_BREACH,
                f"Margin breach. Utilization: {_pct(utilization)}, "
                f"Threshold: {_pct(self.config.margin_breach_threshold)}",
                positions,
                utilization,
            )

        self._check_warnings(pnl, margin)
        return KillSwitchEvent(triggered=False, daily_pnl=pnl, margin_utilization=utilization)

    def _check_warnings(self, pnl: Decimal, margin: MarginState) -> None:
        if pnl < 0 and margin.initial_capital > 0:
            loss_pct = abs(pnl / margin.initial_capital)
            key = f"pnl_{_bucket(loss_pct)}"
            if loss_pct > self.config.pnl_warning_threshold and key not in self.state.warnings_sent:
                self.state.warnings_sent.add(key)
                logger.warning(f"P&L warning: {format_inr(pnl)} ({_pct(loss_pct)} of capital)")
                self._publish(EventType.MARGIN_WARNING, {"kind": "pnl", "pnl": pnl, "loss_pct": loss_pct})

        utilization = margin.utilization
        key = f"margin_{_bucket(utilization)}"
        if utilization > self.config.margin_warning_threshold and key not in self.state.warnings_sent:
            self.state.warnings_sent.add(key)
            logger.warning(f"Margin warning: utilization {_pct(utilization)}")
            self._publish(EventType.MARGIN_WARNING, {"kind": "margin", "utilization": utilization})

    async def _trigger(
        self,
        reason: KillSwitchReason,
        message: str,
        positions: list[Position],
        utilization: Decimal,
    ) -> KillSwitchEvent:
        now = self.clock.now()
        self.state.triggered = True
        self.state.reason = reason
        self.state.message = message
        self.state.triggered_at = now

        logger.critical(f"KILL SWITCH TRIGGERED: {reason.value}. {message}")

        event = KillSwitchEvent(
            triggered=True,
            daily_pnl=self.state.daily_pnl,
            margin_utilization=utilization,
            reason=reason,
            message=message,
            timestamp=now,
        )
        if reason == KillSwitchReason.MARGIN_BREACH:
            self._publish(EventType.MARGIN_BREACH, {"utilization": utilization, "message": message})
        self._publish(EventType.KILL_SWITCH_TRIGGERED, {"event": event})

        open_positions = [p for p in positions if p.quantity > 0]
        if self.config.force_exit_on_breach and open_positions:
            await self._execute_force_exit(open_positions)
        return event

    async def _execute_force_exit(self, positions: list[Position]) -> None:
        if self._force_exit is None:
            logger.warning("Force exit requested but no callback configured")
            return
        logger.warning(f"Force exiting {len(positions)} position(s)")
        try:
            await self._force_exit(positions)
        except Exception as e:
            logger.error(f"Force exit failed: {e}", exc_info=True)
            return
        logger.info("Force exit completed")

    def _current_event(self, utilization: Decimal) -> KillSwitchEvent:
        return KillSwitchEvent(
            triggered=True,
            daily_pnl=self.state.daily_pnl,
            margin_utilization=utilization,
            reason=self.state.reason,
            message="Kill switch already active",
            timestamp=self.state.triggered_at,
        )

    async def manual_trigger(self, reason: str = "User requested", positions: list[Position] | None = None) -> KillSwitchEvent:
        if self.state.triggered:
            return self._current_event(ZERO)
        return await self._trigger(
            KillSwitchReason.MANUAL, f"Kill switch triggered manually: {reason}", positions or [], ZERO
        )

    def reset(self) -> None:
        if self.state.triggered:
            previous = self.state.reason.value if self.state.reason else "UNKNOWN"
            logger.warning(f"KILL SWITCH RESET. Previous reason: {previous}")
        self.state.reset()

    def update_config(self, **updates: Any) -> None:
        self.config = self.config.model_copy(update=updates)
        logger.info(
            f"Kill switch config updated: max daily loss {format_inr(self.config.max_daily_loss)}, "
            f"margin breach {_pct(self.config.margin_breach_threshold)}"
        )

    def status(self) -> dict[str, Any]:
        return {
            "triggered": self.state.triggered,
            "reason": self.state.reason.value if self.state.reason else None,
            "message": self.state.message,
            "triggered_at": self.state.triggered_at,
            "daily_pnl": self.state.daily_pnl,
            "peak_pnl": self.state.peak_pnl,
            "trough_pnl": self.state.trough_pnl,
            "max_drawdown": self.state.max_drawdown,
            "last_check": self.state.last_check,
        }

    def _publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, payload)
