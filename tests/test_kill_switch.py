"""Tests for the kill switch."""

from datetime import datetime
from decimal import Decimal

import pytest

from nsepaper.broker.models import Position
from nsepaper.config_loader import RiskConfig
from nsepaper.constants import InstrumentType, KillSwitchReason, PositionSide, Underlying
from nsepaper.errors import KillSwitchActiveError
from nsepaper.events import EventBus, EventType
from nsepaper.risk.kill_switch import KillSwitch
from nsepaper.risk.margin_tracker import MarginState
from nsepaper.time.clock import SimulatedClock

CAPITAL = Decimal("500000")


def margin(used="0", capital=CAPITAL) -> MarginState:
    used = Decimal(used)
    return MarginState(
        initial_capital=capital,
        used_margin=used,
        available_margin=capital - used,
        pending_order_margin=Decimal("0"),
        realized_pnl=Decimal("0"),
        unrealized_pnl=Decimal("0"),
    )


def position(qty=25) -> Position:
    now = datetime(2024, 1, 15, 10, 0)
    return Position(
        id="pos_1",
        symbol="NIFTY24JAN2524000CE",
        token=10000000,
        underlying=Underlying.NIFTY,
        instrument_type=InstrumentType.CE,
        side=PositionSide.SHORT,
        quantity=qty,
        avg_price=Decimal("200"),
        opened_at=now,
        updated_at=now,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def kill_switch(bus):
    return KillSwitch(RiskConfig(), bus, SimulatedClock())


class TestLimits:
    @pytest.mark.asyncio
    async def test_within_limits(self, kill_switch):
        event = await kill_switch.check(Decimal("-1000"), margin("100000"), [])
        assert not event.triggered
        assert not kill_switch.is_triggered

    @pytest.mark.asyncio
    async def test_absolute_daily_loss(self, kill_switch, bus):
        event = await kill_switch.check(Decimal("-50001"), margin(), [])
        assert event.triggered
        assert event.reason == KillSwitchReason.DAILY_LOSS_LIMIT
        assert len(bus.history(EventType.KILL_SWITCH_TRIGGERED)) == 1

    @pytest.mark.asyncio
    async def test_exactly_at_limit_does_not_trip(self, bus):
        kill_switch = KillSwitch(RiskConfig(max_daily_loss_pct=Decimal("0.5")), bus, SimulatedClock())
        event = await kill_switch.check(Decimal("-50000"), margin(), [])
        assert not event.triggered

    @pytest.mark.asyncio
    async def test_percentage_loss(self, bus):
        config = RiskConfig(max_daily_loss=Decimal("1000000"), max_daily_loss_pct=Decimal("0.02"))
        ks = KillSwitch(config, bus, SimulatedClock())
        event = await ks.check(Decimal("-10001"), margin(), [])
        assert event.triggered
        assert event.reason == KillSwitchReason.DAILY_LOSS_LIMIT

    @pytest.mark.asyncio
    async def test_margin_breach(self, kill_switch, bus):
        event = await kill_switch.check(Decimal("0"), margin("460000"), [])
        assert event.triggered
        assert event.reason == KillSwitchReason.MARGIN_BREACH
        assert len(bus.history(EventType.MARGIN_BREACH)) == 1


class TestLatch:
    @pytest.mark.asyncio
    async def test_stays_triggered_after_recovery(self, kill_switch):
        await kill_switch.check(Decimal("-60000"), margin(), [])
        event = await kill_switch.check(Decimal("5000"), margin(), [])

        assert event.triggered
        assert event.message == "Kill switch already active"
        assert kill_switch.state.daily_pnl == Decimal("5000")
        with pytest.raises(KillSwitchActiveError):
            kill_switch.assert_not_triggered()

    @pytest.mark.asyncio
    async def test_reset_clears_latch(self, kill_switch):
        await kill_switch.check(Decimal("-60000"), margin(), [])
        kill_switch.reset()

        assert not kill_switch.is_triggered
        assert kill_switch.state.reason is None
        kill_switch.assert_not_triggered()

    @pytest.mark.asyncio
    async def test_manual_trigger(self, kill_switch):
        event = await kill_switch.manual_trigger("test")
        assert event.reason == KillSwitchReason.MANUAL
        assert kill_switch.is_triggered

    @pytest.mark.asyncio
    async def test_drawdown_tracking(self, kill_switch):
        await kill_switch.check(Decimal("3000"), margin(), [])
        await kill_switch.check(Decimal("-2000"), margin(), [])
        status = kill_switch.status()
        assert status["peak_pnl"] == Decimal("3000")
        assert status["trough_pnl"] == Decimal("-2000")
        assert status["max_drawdown"] == Decimal("5000")


class TestForceExit:
    @pytest.mark.asyncio
    async def test_force_exit_receives_open_positions(self, kill_switch):
        exited = []

        async def force_exit(positions):
            exited.extend(positions)

        kill_switch.set_force_exit_callback(force_exit)
        await kill_switch.check(Decimal("-60000"), margin(), [position(), position(qty=0)])
        assert len(exited) == 1

    @pytest.mark.asyncio
    async def test_force_exit_disabled(self, bus):
        ks = KillSwitch(RiskConfig(force_exit_on_breach=False), bus, SimulatedClock())
        exited = []

        async def force_exit(positions):
            exited.extend(positions)

        ks.set_force_exit_callback(force_exit)
        await ks.check(Decimal("-60000"), margin(), [position()])
        assert exited == []
        assert ks.is_triggered

    @pytest.mark.asyncio
    async def test_force_exit_failure_keeps_latch(self, kill_switch):
        async def failing(positions):
            raise RuntimeError("venue down")

        kill_switch.set_force_exit_callback(failing)
        event = await kill_switch.check(Decimal("-60000"), margin(), [position()])
        assert event.triggered
        assert kill_switch.is_triggered


class TestWarnings:
    @pytest.mark.asyncio
    async def test_margin_warning_once_per_bucket(self, kill_switch, bus):
        await kill_switch.check(Decimal("0"), margin("400000"), [])
        await kill_switch.check(Decimal("0"), margin("400100"), [])
        await kill_switch.check(Decimal("0"), margin("410000"), [])
        warnings = [e for e in bus.history(EventType.MARGIN_WARNING) if e.payload["kind"] == "margin"]
        assert len(warnings) == 2

    @pytest.mark.asyncio
    async def test_pnl_warning(self, kill_switch, bus):
        await kill_switch.check(Decimal("-20000"), margin(), [])
        warnings = [e for e in bus.history(EventType.MARGIN_WARNING) if e.payload["kind"] == "pnl"]
        assert len(warnings) == 1

    def test_update_config(self, kill_switch):
        kill_switch.update_config(max_daily_loss=Decimal("10000"))
        assert kill_switch.config.max_daily_loss == Decimal("10000")
