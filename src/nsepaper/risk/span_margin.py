"""
SPAN-style margin approximation with spread recognition.

This is an auditable approximation, not the exchange algorithm. Short options
are margined as a percentage of notional picked by moneyness tier and adjusted
for IV, in-the-moneyness and expiry proximity. Long options need no margin.
Only the first recognised spread in a portfolio scan receives relief.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from nsepaper.broker.models import Position
from nsepaper.config_loader import MarginConfig
from nsepaper.constants import InstrumentType, MarginParams, PositionSide, PricingParams, SpreadType, Underlying

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
INFINITY = Decimal("Infinity")

NEAR_EXPIRY_DAYS = 3

_DEFAULT_CONFIG = MarginConfig()


@dataclass(frozen=True)
class MarginCalculation:
    """Margin breakdown for one position."""

    span_margin: Decimal = ZERO
    exposure_margin: Decimal = ZERO
    total_margin: Decimal = ZERO
    premium_received: Decimal = ZERO
    premium_paid: Decimal = ZERO
    net_margin: Decimal = ZERO


@dataclass
class SpreadAnalysis:
    spread_type: SpreadType = SpreadType.NONE
    max_loss: Decimal = ZERO
    positions: list[Position] = field(default_factory=list)

    @property
    def is_spread(self) -> bool:
        return self.spread_type != SpreadType.NONE

    @property
    def defined_risk(self) -> bool:
        return self.max_loss.is_finite()


@dataclass
class PortfolioMargin:
    total_margin: Decimal
    gross_margin: Decimal
    spread_benefit: Decimal
    by_position: dict[str, MarginCalculation]
    spreads: list[SpreadAnalysis]


def _short_span_pct(
    option_type: InstrumentType,
    strike: Decimal,
    spot: Decimal,
    iv_percent: Decimal,
    days_to_expiry: int,
    config: MarginConfig,
) -> Decimal:
    distance = abs(strike - spot) / spot

    if distance < config.atm_threshold:
        pct = config.atm_short_pct
    elif distance < config.near_otm_threshold:
        pct = config.near_otm_short_pct
    elif distance < config.otm_threshold:
        pct = config.otm_short_pct
    else:
        pct = config.deep_otm_short_pct

    if iv_percent > MarginParams.BASELINE_IV:
        pct += (iv_percent - MarginParams.BASELINE_IV) * MarginParams.IV_SURCHARGE_PER_POINT

    itm = spot > strike if option_type == InstrumentType.CE else strike > spot
    if itm:
        pct += distance * MarginParams.ITM_SURCHARGE_RATIO

    if days_to_expiry <= 0:
        pct *= MarginParams.EXPIRY_DAY_MULTIPLIER
    elif days_to_expiry <= 1:
        pct *= MarginParams.DAY_BEFORE_MULTIPLIER
    elif days_to_expiry <= NEAR_EXPIRY_DAYS:
        pct *= MarginParams.NEAR_EXPIRY_MULTIPLIER
    return pct


def option_margin(
    option_type: InstrumentType,
    strike: Decimal,
    side: PositionSide,
    quantity: int,
    avg_price: Decimal,
    spot: Decimal,
    iv_percent: Decimal,
    days_to_expiry: int,
    config: MarginConfig | None = None,
) -> MarginCalculation:
    """Margin for an option position; quantity is in units, not lots."""
    cfg = config or _DEFAULT_CONFIG

    if side == PositionSide.LONG:
        return MarginCalculation(premium_paid=avg_price * quantity)

    premium = avg_price * quantity
    # strike stands in for spot until the first spot tick
    spot_for_notional = spot if spot > 0 else strike

    notional = spot_for_notional * quantity
    pct = _short_span_pct(option_type, strike, spot_for_notional, iv_percent, days_to_expiry, cfg)
    span = notional * pct
    exposure = notional * cfg.exposure_pct
    total = span + exposure

    return MarginCalculation(
        span_margin=span,
        exposure_margin=exposure,
        total_margin=total,
        premium_received=premium,
        net_margin=max(ZERO, total - premium),
    )


def futures_margin(
    quantity: int, spot: Decimal, days_to_expiry: int, config: MarginConfig | None = None
) -> MarginCalculation:
    """Futures margin is symmetric in side."""
    cfg = config or _DEFAULT_CONFIG
    notional = spot * quantity
    multiplier = MarginParams.FUTURES_NEAR_EXPIRY_MULTIPLIER if days_to_expiry <= NEAR_EXPIRY_DAYS else ONE
    span = notional * cfg.futures_initial_pct * multiplier
    exposure = notional * cfg.futures_exposure_pct * multiplier
    total = span + exposure
    return MarginCalculation(span_margin=span, exposure_margin=exposure, total_margin=total, net_margin=total)


# ============================================
# Spread detection
# ============================================


def _options(positions: Iterable[Position], option_type: InstrumentType) -> list[Position]:
    return [p for p in positions if p.instrument_type == option_type]


def _short_pair(positions: list[Position]) -> tuple[Position, Position] | None:
    """The single short call and short put of a group with no long option legs."""
    if any(p.side == PositionSide.LONG and p.is_option for p in positions):
        return None
    calls = [p for p in _options(positions, InstrumentType.CE) if p.is_short]
    puts = [p for p in _options(positions, InstrumentType.PE) if p.is_short]
    if len(calls) != 1 or len(puts) != 1:
        return None
    call, put = calls[0], puts[0]
    if call.quantity != put.quantity:
        return None
    return call, put


def check_straddle(positions: list[Position]) -> SpreadAnalysis:
    pair = _short_pair(positions)
    if pair is None or pair[0].strike != pair[1].strike:
        return SpreadAnalysis()
    return SpreadAnalysis(SpreadType.STRADDLE, INFINITY, list(pair))


def check_strangle(positions: list[Position]) -> SpreadAnalysis:
    pair = _short_pair(positions)
    if pair is None or pair[0].strike == pair[1].strike:
        return SpreadAnalysis()
    return SpreadAnalysis(SpreadType.STRANGLE, INFINITY, list(pair))


def check_iron(positions: list[Position]) -> SpreadAnalysis:
    """Iron fly or condor: short CE/PE inside long CE/PE wings."""
    calls = _options(positions, InstrumentType.CE)
    puts = _options(positions, InstrumentType.PE)
    if len(calls) != 2 or len(puts) != 2:
        return SpreadAnalysis()

    short_call = next((p for p in calls if p.is_short), None)
    long_call = next((p for p in calls if not p.is_short), None)
    short_put = next((p for p in puts if p.is_short), None)
    long_put = next((p for p in puts if not p.is_short), None)
    if not (short_call and long_call and short_put and long_put):
        return SpreadAnalysis()

    strikes = (short_call.strike, long_call.strike, short_put.strike, long_put.strike)
    if any(s is None for s in strikes):
        return SpreadAnalysis()
    if not (long_call.strike > short_call.strike and long_put.strike < short_put.strike):  # type: ignore[operator]
        return SpreadAnalysis()

    call_width = long_call.strike - short_call.strike  # type: ignore[operator]
    put_width = short_put.strike - long_put.strike  # type: ignore[operator]
    qty = short_call.quantity
    net_premium = (
        short_call.avg_price + short_put.avg_price - long_call.avg_price - long_put.avg_price
    ) * qty
    max_loss = max(ZERO, max(call_width, put_width) * qty - net_premium)

    spread_type = SpreadType.IRON_FLY if short_call.strike == short_put.strike else SpreadType.IRON_CONDOR
    return SpreadAnalysis(spread_type, max_loss, [short_call, long_call, short_put, long_put])


def _vertical_pair(pair: list[Position]) -> SpreadAnalysis:
    first, second = pair
    if first.side == second.side or first.quantity != second.quantity:
        return SpreadAnalysis()
    if first.strike is None or second.strike is None:
        return SpreadAnalysis()

    short = first if first.is_short else second
    long = second if short is first else first
    width = abs(short.strike - long.strike)  # type: ignore[operator]
    net_premium = (short.avg_price - long.avg_price) * short.quantity

    if short.avg_price > long.avg_price:
        max_loss = width * short.quantity - net_premium
    else:
        max_loss = -net_premium
    return SpreadAnalysis(SpreadType.VERTICAL, max(ZERO, max_loss), [short, long])


def check_vertical(positions: list[Position]) -> SpreadAnalysis:
    for option_type in (InstrumentType.CE, InstrumentType.PE):
        legs = _options(positions, option_type)
        if len(legs) == 2:
            result = _vertical_pair(legs)
            if result.is_spread:
                return result
    return SpreadAnalysis()


_CHECKS = (check_straddle, check_strangle, check_iron, check_vertical)


def analyze_spread(positions: Iterable[Position]) -> SpreadAnalysis:
    """First recognised spread across underlying/expiry groups, in priority order."""
    groups: dict[tuple[Underlying, date | None], list[Position]] = {}
    for position in positions:
        if position.quantity <= 0 or not position.is_option:
            continue
        groups.setdefault((position.underlying, position.expiry), []).append(position)

    for group in groups.values():
        if len(group) < 2:
            continue
        for check in _CHECKS:
            result = check(group)
            if result.is_spread:
                return result
    return SpreadAnalysis()


# ============================================
# Portfolio
# ============================================


class MarginCalculator:
    """Portfolio margin with spread relief."""

    def __init__(self, config: MarginConfig | None = None) -> None:
        self.config = config or _DEFAULT_CONFIG

    def position_margin(
        self, position: Position, spot: Decimal, iv_percent: Decimal, days_to_expiry: int
    ) -> MarginCalculation | None:
        if position.quantity <= 0:
            return None
        if position.is_option and position.strike is not None:
            return option_margin(
                position.instrument_type,
                position.strike,
                position.side,
                position.quantity,
                position.avg_price,
                spot,
                iv_percent,
                days_to_expiry,
                self.config,
            )
        if position.instrument_type == InstrumentType.FUT:
            return futures_margin(position.quantity, spot, days_to_expiry, self.config)
        return None

    def portfolio_margin(
        self,
        positions: list[Position],
        spots: dict[Underlying, Decimal],
        ivs: dict[int, Decimal],
        days_to_expiry: dict[str, int],
    ) -> PortfolioMargin:
        """
        Sum per-position net margin, then apply relief for the first spread found.

        Defined-risk spreads are capped at max loss plus a 10% buffer; straddles
        and strangles get a flat 15% reduction on their legs' margin. ivs are in
        percent keyed by token (default 20); days_to_expiry is keyed by position id.
        """
        by_position: dict[str, MarginCalculation] = {}
        gross = ZERO

        for position in positions:
            margin = self.position_margin(
                position,
                spots.get(position.underlying, ZERO),
                ivs.get(position.token, PricingParams.DEFAULT_IV_PERCENT),
                days_to_expiry.get(position.id, 0),
            )
            if margin is None:
                continue
            by_position[position.id] = margin
            gross += margin.net_margin

        spread = analyze_spread(positions)
        benefit = ZERO
        spreads: list[SpreadAnalysis] = []

        if spread.is_spread:
            spreads.append(spread)
            spread_margin = sum(
                (by_position[p.id].net_margin for p in spread.positions if p.id in by_position), ZERO
            )
            if spread.defined_risk:
                if spread.max_loss > 0:
                    benefit = max(ZERO, spread_margin - spread.max_loss * MarginParams.DEFINED_RISK_BUFFER)
            else:
                benefit = spread_margin * MarginParams.UNDEFINED_RISK_BENEFIT
            if benefit > 0:
                logger.debug(f"{spread.spread_type.value} margin relief {benefit}")

        return PortfolioMargin(
            total_margin=max(ZERO, gross - benefit),
            gross_margin=gross,
            spread_benefit=benefit,
            by_position=by_position,
            spreads=spreads,
        )
