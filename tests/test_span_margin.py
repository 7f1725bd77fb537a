"""Tests for the SPAN margin approximation and spread recognition."""

from datetime import date, datetime
from decimal import Decimal
from itertools import count

import pytest

from nsepaper.broker.models import Position
from nsepaper.constants import InstrumentType, PositionSide, SpreadType, Underlying
from nsepaper.risk.span_margin import (
    MarginCalculator,
    analyze_spread,
    check_straddle,
    futures_margin,
    option_margin,
)

CE = InstrumentType.CE
PE = InstrumentType.PE
LONG = PositionSide.LONG
SHORT = PositionSide.SHORT
SPOT = Decimal("24000")
EXPIRY = date(2024, 1, 25)
NOW = datetime(2024, 1, 15, 10, 0)

_ids = count(1)


def pos(option_type, strike, side, avg, qty=25, underlying=Underlying.NIFTY, expiry=EXPIRY) -> Position:
    n = next(_ids)
    return Position(
        id=f"pos_{n}",
        symbol=f"{underlying.value}-{strike}-{option_type.value}-{n}",
        token=n,
        underlying=underlying,
        instrument_type=option_type,
        side=side,
        quantity=qty,
        avg_price=Decimal(avg),
        opened_at=NOW,
        updated_at=NOW,
        strike=Decimal(strike) if strike is not None else None,
        expiry=expiry,
    )


def short_margin(option_type=CE, strike="24000", iv="15", days=10, spot=SPOT):
    return option_margin(option_type, Decimal(strike), SHORT, 25, Decimal("200"), spot, Decimal(iv), days)


@pytest.fixture
def calculator():
    return MarginCalculator()


def portfolio(calculator, positions, spots=None):
    spots = spots or {Underlying.NIFTY: SPOT, Underlying.BANKNIFTY: Decimal("51000")}
    days = {p.id: 10 for p in positions}
    ivs = {p.token: Decimal("15") for p in positions}
    return calculator.portfolio_margin(positions, spots, ivs, days)


class TestOptionMargin:
    def test_atm_short(self):
        m = short_margin()
        assert m.span_margin == Decimal("108000")
        assert m.exposure_margin == Decimal("18000")
        assert m.total_margin == Decimal("126000")
        assert m.premium_received == Decimal("5000")
        assert m.net_margin == Decimal("121000")

    def test_long_needs_no_margin(self):
        m = option_margin(CE, SPOT, LONG, 25, Decimal("200"), SPOT, Decimal("15"), 10)
        assert m.net_margin == 0
        assert m.premium_paid == Decimal("5000")

    def test_tiers_decrease_with_distance(self):
        atm = short_margin(strike="24000").span_margin
        near = short_margin(strike="24800").span_margin
        otm = short_margin(strike="25500").span_margin
        deep = short_margin(strike="27000").span_margin
        assert atm > near > otm > deep

    def test_iv_surcharge(self):
        base = short_margin(iv="15").span_margin
        high = short_margin(iv="20").span_margin
        assert high - base == Decimal("600000") * Decimal("0.025")

    def test_itm_costs_more_than_otm(self):
        itm_call = short_margin(CE, strike="23000").span_margin
        otm_put = short_margin(PE, strike="23000").span_margin
        assert itm_call > otm_put

    @pytest.mark.parametrize("days,multiplier", [(0, "1.5"), (1, "1.25"), (3, "1.10"), (10, "1")])
    def test_expiry_proximity(self, days, multiplier):
        assert short_margin(days=days).span_margin == Decimal("108000") * Decimal(multiplier)

    def test_zero_spot_uses_strike(self):
        assert short_margin(spot=Decimal("0")).span_margin == Decimal("108000")


class TestFuturesMargin:
    def test_symmetric_margin(self):
        m = futures_margin(25, SPOT, 10)
        assert m.total_margin == Decimal("90000")
        assert m.net_margin == m.total_margin

    def test_near_expiry(self):
        assert futures_margin(25, SPOT, 2).total_margin == Decimal("99000")


class TestSpreadDetection:
    def test_straddle(self):
        result = analyze_spread([pos(CE, "24000", SHORT, "200"), pos(PE, "24000", SHORT, "190")])
        assert result.spread_type == SpreadType.STRADDLE
        assert not result.defined_risk

    def test_strangle(self):
        result = analyze_spread([pos(CE, "24200", SHORT, "120"), pos(PE, "23800", SHORT, "110")])
        assert result.spread_type == SpreadType.STRANGLE

    def test_straddle_requires_no_long_options(self):
        legs = [pos(CE, "24000", SHORT, "200"), pos(PE, "24000", SHORT, "190"), pos(CE, "24500", LONG, "50")]
        assert check_straddle(legs).spread_type == SpreadType.NONE

    def test_unequal_quantities_not_a_straddle(self):
        legs = [pos(CE, "24000", SHORT, "200"), pos(PE, "24000", SHORT, "190", qty=50)]
        assert analyze_spread(legs).spread_type == SpreadType.NONE

    def test_iron_fly_and_condor(self):
        fly = analyze_spread([
            pos(CE, "24000", SHORT, "200"),
            pos(PE, "24000", SHORT, "190"),
            pos(CE, "24200", LONG, "110"),
            pos(PE, "23800", LONG, "100"),
        ])
        condor = analyze_spread([
            pos(CE, "24100", SHORT, "150"),
            pos(PE, "23900", SHORT, "140"),
            pos(CE, "24200", LONG, "100"),
            pos(PE, "23800", LONG, "95"),
        ])
        assert fly.spread_type == SpreadType.IRON_FLY
        assert condor.spread_type == SpreadType.IRON_CONDOR
        assert condor.max_loss == Decimal("125")

    def test_vertical(self):
        result = analyze_spread([pos(CE, "24000", LONG, "200"), pos(CE, "24100", SHORT, "150")])
        assert result.spread_type == SpreadType.VERTICAL
        assert result.max_loss == Decimal("1250")

    def test_different_expiries_not_grouped(self):
        legs = [pos(CE, "24000", SHORT, "200"), pos(PE, "24000", SHORT, "190", expiry=date(2024, 2, 1))]
        assert analyze_spread(legs).spread_type == SpreadType.NONE


class TestPortfolioMargin:
    def test_straddle_margin_below_sum_of_legs(self, calculator):
        legs = [pos(CE, "24000", SHORT, "200"), pos(PE, "24000", SHORT, "200")]
        result = portfolio(calculator, legs)

        assert result.gross_margin == Decimal("242000")
        assert result.spread_benefit == Decimal("36300")
        assert result.total_margin == Decimal("205700")
        assert result.total_margin < result.gross_margin

    def test_defined_risk_capped_at_max_loss(self, calculator):
        legs = [
            pos(CE, "24100", SHORT, "150"),
            pos(PE, "23900", SHORT, "140"),
            pos(CE, "24200", LONG, "100"),
            pos(PE, "23800", LONG, "95"),
        ]
        result = portfolio(calculator, legs)
        assert result.total_margin == Decimal("125") * Decimal("1.10")

    def test_only_first_spread_gets_relief(self, calculator):
        nifty = [pos(CE, "24000", SHORT, "200"), pos(PE, "24000", SHORT, "200")]
        bank = [
            pos(CE, "51000", SHORT, "400", qty=15, underlying=Underlying.BANKNIFTY),
            pos(PE, "51000", SHORT, "400", qty=15, underlying=Underlying.BANKNIFTY),
        ]
        result = portfolio(calculator, nifty + bank)
        assert len(result.spreads) == 1
        assert result.spreads[0].positions[0].underlying == Underlying.NIFTY

    def test_closed_positions_ignored(self, calculator):
        closed = pos(CE, "24000", SHORT, "200", qty=0)
        result = portfolio(calculator, [closed])
        assert result.total_margin == 0
        assert result.by_position == {}

    def test_long_only_portfolio_needs_nothing(self, calculator):
        result = portfolio(calculator, [pos(CE, "24000", LONG, "200")])
        assert result.total_margin == 0
