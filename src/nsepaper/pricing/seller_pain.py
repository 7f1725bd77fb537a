"""
Seller pain model.

Short option holders lose more than delta/gamma alone suggest during fast spot
moves because implied volatility spikes at the same time. These functions
estimate that inflation and the resulting mark-to-market damage. The worst
case figure is a stress diagnostic and is not used by margin or risk checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal

from nsepaper.constants import InstrumentType, PricingParams, SlippageParams, SpotDirection
from nsepaper.pricing.black_scholes import BSParams, greeks, option_price

ZERO = Decimal("0")
ONE = Decimal("1")
HALF = Decimal("0.5")
HUNDRED = Decimal("100")

ACCELERATION_BOOST_THRESHOLD = Decimal("2")
ACCELERATION_BOOST = Decimal("1.1")

# (max |moneyness - 1|, share of the excess inflation kept)
MONEYNESS_SCALING = (
    (Decimal("0.02"), Decimal("1")),
    (Decimal("0.05"), Decimal("0.8")),
    (Decimal("0.10"), Decimal("0.6")),
)
DEEP_OTM_SCALING = Decimal("0.4")

# (max days to expiry, multiplier)
EXPIRY_BOOST = (
    (Decimal("1"), Decimal("1.3")),
    (Decimal("3"), Decimal("1.15")),
    (Decimal("7"), Decimal("1.05")),
)

STRESS_SIGMAS = Decimal("5")
STRESS_IV_MULTIPLIER = Decimal("2")
MINUTES_PER_YEAR = Decimal("525600")
EXPIRY_DAY_VOLATILITY = Decimal("0.50")
PIN_RISK_DISTANCE = Decimal("0.005")
GAMMA_SHOCK = Decimal("0.01")


@dataclass(frozen=True)
class IVInflationParams:
    base_iv: Decimal
    spot_velocity: Decimal
    spot_acceleration: Decimal
    days_to_expiry: Decimal
    moneyness: Decimal
    direction: SpotDirection = SpotDirection.FLAT


def inflated_iv(params: IVInflationParams) -> Decimal:
    """Base IV scaled by velocity tier, acceleration, moneyness and expiry proximity."""
    velocity = abs(params.spot_velocity)
    if velocity >= SlippageParams.VELOCITY_EXTREME:
        factor = PricingParams.IV_INFLATION_EXTREME
    elif velocity >= SlippageParams.VELOCITY_HIGH:
        factor = PricingParams.IV_INFLATION_HIGH
    elif velocity >= SlippageParams.VELOCITY_MEDIUM:
        factor = PricingParams.IV_INFLATION_MEDIUM
    else:
        factor = PricingParams.IV_INFLATION_BASE

    if abs(params.spot_acceleration) > ACCELERATION_BOOST_THRESHOLD:
        factor *= ACCELERATION_BOOST

    distance = abs(params.moneyness - ONE)
    share = DEEP_OTM_SCALING
    for limit, kept in MONEYNESS_SCALING:
        if distance < limit:
            share = kept
            break
    factor = ONE + (factor - ONE) * share

    for max_days, boost in EXPIRY_BOOST:
        if params.days_to_expiry <= max_days:
            factor *= boost
            break

    return params.base_iv * factor


@dataclass(frozen=True)
class GreeksImpact:
    delta_impact: Decimal
    gamma_impact: Decimal
    vega_impact: Decimal


@dataclass(frozen=True)
class SellerPain:
    original_value: Decimal
    inflated_value: Decimal
    mtm_loss: Decimal
    iv_change: Decimal
    impact: GreeksImpact


def seller_pain(
    quantity: int,
    original: BSParams,
    new_spot: Decimal,
    velocity: Decimal,
    acceleration: Decimal,
    direction: SpotDirection = SpotDirection.FLAT,
    time_decay_days: Decimal = ZERO,
) -> SellerPain:
    """
    Re-price a short position after a spot move at inflated IV.

    mtm_loss is positive when the short position loses. iv_change is in vol
    points; the Greek impacts are first/second order attributions for display.
    """
    original_greeks = greeks(original)
    original_value = option_price(original) * quantity

    iv = inflated_iv(
        IVInflationParams(
            base_iv=original.volatility,
            spot_velocity=velocity,
            spot_acceleration=acceleration,
            days_to_expiry=original.time_to_expiry * PricingParams.DAYS_IN_YEAR,
            moneyness=new_spot / original.strike,
            direction=direction,
        )
    )

    decayed = max(
        PricingParams.MIN_TIME_TO_EXPIRY,
        original.time_to_expiry - time_decay_days / PricingParams.DAYS_IN_YEAR,
    )
    shocked = replace(original, spot=new_spot, volatility=iv, time_to_expiry=decayed)
    inflated_value = option_price(shocked) * quantity

    spot_change = new_spot - original.spot
    iv_change = (iv - original.volatility) * HUNDRED

    return SellerPain(
        original_value=original_value,
        inflated_value=inflated_value,
        mtm_loss=inflated_value - original_value,
        iv_change=iv_change,
        impact=GreeksImpact(
            delta_impact=spot_change * original_greeks.delta * quantity,
            gamma_impact=spot_change * spot_change * HALF * original_greeks.gamma * quantity,
            vega_impact=iv_change * original_greeks.vega * quantity,
        ),
    )


# ============================================
# Multi-leg pain
# ============================================


@dataclass(frozen=True)
class PainLeg:
    option_type: InstrumentType
    strike: Decimal
    quantity: int
    avg_price: Decimal
    is_short: bool


@dataclass(frozen=True)
class LegPain:
    option_type: InstrumentType
    strike: Decimal
    mtm_loss: Decimal


@dataclass
class StrategyPain:
    total_mtm_loss: Decimal
    net_delta: Decimal
    net_gamma: Decimal
    net_vega: Decimal
    worst_case_loss: Decimal
    legs: list[LegPain] = field(default_factory=list)


def _leg_loss(leg: PainLeg, price_diff: Decimal) -> Decimal:
    loss = price_diff * leg.quantity
    return loss if leg.is_short else -loss


def strategy_pain(
    legs: list[PainLeg],
    original_spot: Decimal,
    new_spot: Decimal,
    base_iv: Decimal,
    time_to_expiry: Decimal,
    spot_velocity: Decimal,
    risk_free_rate: Decimal = PricingParams.RISK_FREE_RATE,
) -> StrategyPain:
    """Aggregate pain and signed net Greeks for a set of option legs."""
    direction = SpotDirection.UP if new_spot > original_spot else SpotDirection.DOWN
    days = time_to_expiry * PricingParams.DAYS_IN_YEAR

    total = net_delta = net_gamma = net_vega = ZERO
    leg_pains: list[LegPain] = []

    for leg in legs:
        params = BSParams(
            spot=original_spot,
            strike=leg.strike,
            time_to_expiry=time_to_expiry,
            volatility=base_iv,
            option_type=leg.option_type,
            risk_free_rate=risk_free_rate,
        )
        leg_greeks = greeks(params)
        iv = inflated_iv(
            IVInflationParams(
                base_iv=base_iv,
                spot_velocity=spot_velocity,
                spot_acceleration=ZERO,
                days_to_expiry=days,
                moneyness=new_spot / leg.strike,
                direction=direction,
            )
        )
        price_diff = option_price(replace(params, spot=new_spot, volatility=iv)) - option_price(params)
        loss = _leg_loss(leg, price_diff)

        total += loss
        leg_pains.append(LegPain(option_type=leg.option_type, strike=leg.strike, mtm_loss=loss))

        signed_qty = -leg.quantity if leg.is_short else leg.quantity
        net_delta += leg_greeks.delta * signed_qty
        net_gamma += leg_greeks.gamma * signed_qty
        net_vega += leg_greeks.vega * signed_qty

    return StrategyPain(
        total_mtm_loss=total,
        net_delta=net_delta,
        net_gamma=net_gamma,
        net_vega=net_vega,
        worst_case_loss=worst_case_loss(legs, original_spot, base_iv, time_to_expiry, risk_free_rate),
        legs=leg_pains,
    )


def worst_case_loss(
    legs: list[PainLeg],
    spot: Decimal,
    base_iv: Decimal,
    time_to_expiry: Decimal,
    risk_free_rate: Decimal = PricingParams.RISK_FREE_RATE,
) -> Decimal:
    """Larger of the up/down losses under a 5-sigma daily move with doubled IV."""
    daily_vol = base_iv / PricingParams.TRADING_DAYS_IN_YEAR.sqrt()
    move = spot * daily_vol * STRESS_SIGMAS
    up_loss = down_loss = ZERO

    for leg in legs:
        params = BSParams(
            spot=spot,
            strike=leg.strike,
            time_to_expiry=time_to_expiry,
            volatility=base_iv * STRESS_IV_MULTIPLIER,
            option_type=leg.option_type,
            risk_free_rate=risk_free_rate,
        )
        base_price = option_price(params)
        up_loss += _leg_loss(leg, option_price(replace(params, spot=spot + move)) - base_price)
        down_loss += _leg_loss(leg, option_price(replace(params, spot=spot - move)) - base_price)

    return max(up_loss, down_loss)


@dataclass(frozen=True)
class ExpiryGammaPain:
    current_value: Decimal
    value_after_move: Decimal
    gamma_pain: Decimal
    pin_risk: bool


def expiry_gamma_pain(
    strike: Decimal,
    spot: Decimal,
    option_type: InstrumentType,
    quantity: int,
    minutes_to_expiry: int,
) -> ExpiryGammaPain:
    """Value change of a short option for an adverse 1% move in the final minutes."""
    params = BSParams(
        spot=spot,
        strike=strike,
        time_to_expiry=Decimal(minutes_to_expiry) / MINUTES_PER_YEAR,
        volatility=EXPIRY_DAY_VOLATILITY,
        option_type=option_type,
    )
    current_value = option_price(params) * quantity

    shock = spot * GAMMA_SHOCK
    shocked_spot = spot + shock if option_type == InstrumentType.CE else spot - shock
    value_after = option_price(replace(params, spot=shocked_spot)) * quantity

    return ExpiryGammaPain(
        current_value=current_value,
        value_after_move=value_after,
        gamma_pain=value_after - current_value,
        pin_risk=abs(spot - strike) / spot < PIN_RISK_DISTANCE,
    )
