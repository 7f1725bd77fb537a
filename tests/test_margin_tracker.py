"""Tests for account margin tracking and admission."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from nsepaper.broker.models import Position
from nsepaper.constants import InstrumentType, PositionSide, Underlying
from nsepaper.errors import InsufficientMarginError
from nsepaper.risk.margin_tracker import MarginTracker

CAPITAL = Decimal("500000")
NOW = datetime(2024, 1, 15, 10, 0)
SPOTS = {Underlying.NIFTY: Decimal("24000")}
IVS = {10000000: Decimal("15")}


def short_call(unrealized="0", qty=25) -> Position:
    return Position(
        id="pos_1",
        symbol="NIFTY24JAN2524000CE",
        token=10000000,
        underlying=Underlying.NIFTY,
        instrument_type=InstrumentType.CE,
        side=PositionSide.SHORT,
        quantity=qty,
        avg_price=Decimal("200"),
        opened_at=NOW,
        updated_at=NOW,
        strike=Decimal("24000"),
        expiry=date(2024, 1, 25),
        unrealized_pnl=Decimal(unrealized),
    )


@pytest.fixture
def tracker():
    return MarginTracker(CAPITAL)


class TestAvailableMargin:
    def test_starts_at_capital(self, tracker):
        assert tracker.available_margin == CAPITAL
        assert tracker.get_state().utilization == 0

    def test_unrealized_gain_does_not_free_margin(self, tracker):
        tracker.update([short_call("10000")], SPOTS, IVS, {"pos_1": 10})
        state = tracker.get_state()
        assert state.used_margin == Decimal("121000")
        assert state.available_margin == CAPITAL - Decimal("121000")
        assert state.net_liquidation == CAPITAL + Decimal("10000")

    def test_unrealized_loss_consumes_margin(self, tracker):
        tracker.update([short_call("-10000")], SPOTS, IVS, {"pos_1": 10})
        assert tracker.available_margin == CAPITAL - Decimal("121000") - Decimal("10000")

    def test_realized_pnl_changes_available(self, tracker):
        tracker.add_realized_pnl(Decimal("2500"))
        assert tracker.available_margin == CAPITAL + Decimal("2500")
        tracker.add_realized_pnl(Decimal("-5000"))
        assert tracker.available_margin == CAPITAL - Decimal("2500")

    def test_update_sets_position_margin(self, tracker):
        position = short_call()
        tracker.update([position], SPOTS, IVS, {"pos_1": 10})
        assert position.margin == Decimal("121000")
        assert tracker.position_margin("pos_1").net_margin == Decimal("121000")

    def test_closed_positions_ignored(self, tracker):
        tracker.update([short_call(qty=0)], SPOTS, IVS, {})
        assert tracker.used_margin == 0

    def test_utilization(self, tracker):
        tracker.update([short_call()], SPOTS, IVS, {"pos_1": 10})
        assert tracker.get_state().utilization == Decimal("121000") / CAPITAL


class TestAdmission:
    def test_can_place_within_available(self, tracker):
        assert tracker.can_place_order(Decimal("100000")) == (True, None)

    def test_rejects_beyond_available(self, tracker):
        allowed, reason = tracker.can_place_order(Decimal("600000"))
        assert not allowed
        assert "Insufficient margin" in reason

    def test_premium_credit_offsets_requirement(self, tracker):
        allowed, _ = tracker.can_place_order(Decimal("510000"), premium_credit=Decimal("20000"))
        assert allowed

    def test_assert_raises(self, tracker):
        with pytest.raises(InsufficientMarginError):
            tracker.assert_can_place_order(Decimal("600000"))


class TestReservations:
    def test_reserve_and_release(self, tracker):
        tracker.reserve("ord_1", Decimal("50000"))
        assert tracker.pending_order_margin == Decimal("50000")
        assert tracker.available_margin == CAPITAL - Decimal("50000")

        assert tracker.release("ord_1") == Decimal("50000")
        assert tracker.release("ord_1") == 0
        assert tracker.available_margin == CAPITAL

    def test_negative_reservation_clamped(self, tracker):
        tracker.reserve("ord_1", Decimal("-10"))
        assert tracker.reserved_for("ord_1") == 0


class TestDailyReset:
    def test_carries_realized_into_capital(self, tracker):
        tracker.reserve("ord_1", Decimal("1000"))
        tracker.add_realized_pnl(Decimal("7500"))
        tracker.reset_daily()

        assert tracker.initial_capital == CAPITAL + Decimal("7500")
        assert tracker.realized_pnl == 0
        assert tracker.pending_order_margin == 0

    def test_update_capital(self, tracker):
        tracker.update_capital(Decimal("1000000"))
        assert tracker.available_margin == Decimal("1000000")

    def test_breakdown(self, tracker):
        tracker.update([short_call()], SPOTS, IVS, {"pos_1": 10}, now=NOW)
        breakdown = tracker.breakdown()
        assert breakdown.last_update == NOW
        assert "pos_1" in breakdown.by_position
