"""Tests for spot velocity tracking."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from nsepaper.constants import SpotDirection, Underlying, VelocityCategory
from nsepaper.data.spot_tracker import SpotTracker, velocity_category

NIFTY = Underlying.NIFTY
START = datetime(2024, 1, 15, 10, 0)


@pytest.fixture
def tracker():
    return SpotTracker()


def feed(tracker, prices, step_ms=1000):
    for i, price in enumerate(prices):
        tracker.update(NIFTY, Decimal(price), START + timedelta(milliseconds=i * step_ms))


class TestSampling:
    def test_throttles_fast_updates(self, tracker):
        assert tracker.update(NIFTY, Decimal("24000"), START)
        assert not tracker.update(NIFTY, Decimal("24010"), START + timedelta(milliseconds=200))
        assert tracker.update(NIFTY, Decimal("24010"), START + timedelta(milliseconds=500))

    def test_single_sample_has_no_movement(self, tracker):
        tracker.update(NIFTY, Decimal("24000"), START)
        assert tracker.get_movement(NIFTY) is None
        assert tracker.get_velocity(NIFTY) == 0
        assert tracker.get_direction(NIFTY) == SpotDirection.FLAT


class TestVelocity:
    def test_points_per_second(self, tracker):
        feed(tracker, ["24000", "24010", "24020"])
        assert tracker.get_velocity(NIFTY) == Decimal("10")
        assert tracker.get_direction(NIFTY) == SpotDirection.UP
        assert tracker.get_velocity_category(NIFTY) == VelocityCategory.LOW

    def test_falling_market(self, tracker):
        feed(tracker, ["24000", "23960", "23920"])
        assert tracker.get_velocity(NIFTY) == Decimal("-40")
        assert tracker.get_direction(NIFTY) == SpotDirection.DOWN
        assert tracker.get_velocity_category(NIFTY) == VelocityCategory.HIGH
        assert tracker.get_velocity_multiplier(NIFTY) == Decimal("1.5")

    def test_window_limits_lookback(self, tracker):
        feed(tracker, ["24000"] + ["24100"] * 7)
        assert tracker.get_velocity(NIFTY) == 0

    def test_acceleration(self, tracker):
        feed(tracker, ["24000", "24010", "24040"])
        assert tracker.get_acceleration(NIFTY) == Decimal("10")

    def test_panic_mode(self, tracker):
        feed(tracker, ["24000", "24000", "23880"])
        assert tracker.get_velocity(NIFTY) == Decimal("-60")
        assert tracker.is_panic_mode(NIFTY)
        assert tracker.get_iv_inflation_factor(NIFTY) == Decimal("1.5") * Decimal("1.1")


class TestStatistics:
    def test_range(self, tracker):
        feed(tracker, ["24000", "24050", "23980"])
        assert tracker.get_range(NIFTY) == (Decimal("24050"), Decimal("23980"), Decimal("70"))

    def test_volatility_estimate(self, tracker):
        assert tracker.get_volatility_estimate(NIFTY) == 0
        feed(tracker, ["24000", "24100", "24000", "24100"])
        assert tracker.get_volatility_estimate(NIFTY) > 0

    def test_clear(self, tracker):
        feed(tracker, ["24000", "24010"])
        tracker.clear(NIFTY)
        assert tracker.get_movement(NIFTY) is None
        assert tracker.all_movements() == {}


@pytest.mark.parametrize(
    "velocity,category",
    [("0", "LOW"), ("15", "MEDIUM"), ("-30", "HIGH"), ("50", "EXTREME")],
)
def test_velocity_category(velocity, category):
    assert velocity_category(Decimal(velocity)) == VelocityCategory(category)
