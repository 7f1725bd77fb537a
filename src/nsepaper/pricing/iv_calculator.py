"""Implied volatility solver and IV surface helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from nsepaper.config_loader import PricingConfig
from nsepaper.constants import InstrumentType, PricingParams
from nsepaper.errors import IVCalculationError
from nsepaper.pricing.black_scholes import BSParams, intrinsic_value, option_price, option_vega

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
TWO = Decimal("2")
HUNDRED = Decimal("100")

_DEFAULT_CONFIG = PricingConfig()


def implied_volatility(
    market_price: Decimal,
    spot: Decimal,
    strike: Decimal,
    time_to_expiry: Decimal,
    option_type: InstrumentType,
    risk_free_rate: Decimal | None = None,
    config: PricingConfig | None = None,
) -> Decimal:
    """
    Solve for volatility (as a fraction) from an observed premium.

    Newton-Raphson from the initial guess, clamped to [iv_min, iv_max] each
    step, with a bisection fallback when vega vanishes or the iteration budget
    runs out. Sentinels: a non-positive price gives 0; a price below intrinsic
    or above the option's upper bound (spot for calls, strike for puts) gives
    iv_max; at expiry the initial guess is returned.

    Raises:
        IVCalculationError: If spot or strike is not positive.
    """
    cfg = config or _DEFAULT_CONFIG
    rate = cfg.risk_free_rate if risk_free_rate is None else risk_free_rate

    if market_price <= 0:
        return ZERO

    if spot <= 0 or strike <= 0:
        raise IVCalculationError(
            "spot and strike must be positive", {"spot": str(spot), "strike": str(strike)}
        )

    if time_to_expiry <= PricingParams.MIN_TIME_TO_EXPIRY:
        return cfg.iv_initial_guess

    if market_price < intrinsic_value(spot, strike, option_type):
        return cfg.iv_max

    upper_bound = spot if option_type == InstrumentType.CE else strike
    if market_price > upper_bound:
        return cfg.iv_max

    params = BSParams(
        spot=spot,
        strike=strike,
        time_to_expiry=time_to_expiry,
        volatility=cfg.iv_initial_guess,
        option_type=option_type,
        risk_free_rate=rate,
    )
    volatility = cfg.iv_initial_guess

    for _ in range(cfg.iv_max_iterations):
        params = params.with_volatility(volatility)
        diff = option_price(params) - market_price
        if abs(diff) < cfg.iv_precision:
            return volatility

        v = option_vega(params)
        if abs(v) < PricingParams.MIN_VEGA:
            return implied_volatility_bisection(market_price, params, cfg)

        volatility = volatility - diff / (v * HUNDRED)
        volatility = max(cfg.iv_min, min(cfg.iv_max, volatility))

    logger.debug(f"Newton did not converge for {option_type.value} K={strike}; bisecting")
    return implied_volatility_bisection(market_price, params, cfg)


def implied_volatility_bisection(
    market_price: Decimal, params: BSParams, config: PricingConfig | None = None
) -> Decimal:
    """Bisection over [iv_min, iv_max]; returns the best midpoint found."""
    cfg = config or _DEFAULT_CONFIG
    low, high = cfg.iv_min, cfg.iv_max
    mid = (low + high) / TWO

    for _ in range(PricingParams.IV_BISECTION_ITERATIONS):
        if high - low <= cfg.iv_precision:
            break
        diff = option_price(params.with_volatility(mid)) - market_price
        if abs(diff) < cfg.iv_precision:
            break
        if diff > 0:
            high = mid
        else:
            low = mid
        mid = (low + high) / TWO

    return mid


# ============================================
# IV surface
# ============================================


@dataclass(frozen=True)
class OptionQuote:
    """Input row for surface construction."""

    strike: Decimal
    expiry: date
    option_type: InstrumentType
    market_price: Decimal
    time_to_expiry: Decimal


@dataclass(frozen=True)
class IVPoint:
    strike: Decimal
    expiry: date
    option_type: InstrumentType
    iv: Decimal
    market_price: Decimal
    theoretical_price: Decimal
    moneyness: Decimal
    time_to_expiry: Decimal


@dataclass
class IVSurface:
    underlying: str
    spot: Decimal
    timestamp: datetime
    points: list[IVPoint]

    def for_expiry(self, expiry: date, option_type: InstrumentType | None = None) -> list[IVPoint]:
        return [
            p
            for p in self.points
            if p.expiry == expiry and (option_type is None or p.option_type == option_type)
        ]


def build_iv_surface(
    underlying: str,
    spot: Decimal,
    quotes: list[OptionQuote],
    timestamp: datetime,
    risk_free_rate: Decimal | None = None,
    config: PricingConfig | None = None,
) -> IVSurface:
    """Solve IV for every quote; rows with invalid inputs are skipped."""
    cfg = config or _DEFAULT_CONFIG
    rate = cfg.risk_free_rate if risk_free_rate is None else risk_free_rate
    points: list[IVPoint] = []

    for quote in quotes:
        try:
            iv = implied_volatility(
                quote.market_price,
                spot,
                quote.strike,
                quote.time_to_expiry,
                quote.option_type,
                rate,
                cfg,
            )
        except IVCalculationError as e:
            logger.debug(f"Skipping surface point {quote.strike} {quote.option_type.value}: {e}")
            continue

        theoretical = option_price(
            BSParams(
                spot=spot,
                strike=quote.strike,
                time_to_expiry=quote.time_to_expiry,
                volatility=iv,
                option_type=quote.option_type,
                risk_free_rate=rate,
            )
        )
        points.append(
            IVPoint(
                strike=quote.strike,
                expiry=quote.expiry,
                option_type=quote.option_type,
                iv=iv,
                market_price=quote.market_price,
                theoretical_price=theoretical,
                moneyness=spot / quote.strike,
                time_to_expiry=quote.time_to_expiry,
            )
        )

    return IVSurface(underlying=underlying, spot=spot, timestamp=timestamp, points=points)


def atm_iv(surface: IVSurface, expiry: date) -> Decimal | None:
    """Average IV of the CE and PE nearest the money (or whichever exists)."""
    points = sorted(surface.for_expiry(expiry), key=lambda p: abs(p.moneyness - ONE))
    if not points:
        return None
    ce = next((p for p in points if p.option_type == InstrumentType.CE), None)
    pe = next((p for p in points if p.option_type == InstrumentType.PE), None)
    if ce and pe:
        return (ce.iv + pe.iv) / TWO
    return (ce or pe).iv  # type: ignore[union-attr]


def iv_skew(surface: IVSurface, expiry: date, distance: Decimal = Decimal("0.05")) -> Decimal | None:
    """OTM put IV minus OTM call IV at the given moneyness distance (moneyness is spot / strike)."""
    points = surface.for_expiry(expiry)
    if len(points) < 2:
        return None
    otm_put = next(
        (p for p in points if p.option_type == InstrumentType.PE and p.moneyness > ONE + distance),
        None,
    )
    otm_call = next(
        (p for p in points if p.option_type == InstrumentType.CE and p.moneyness < ONE - distance),
        None,
    )
    if otm_put is None or otm_call is None:
        return None
    return otm_put.iv - otm_call.iv


def interpolate_iv(
    surface: IVSurface, strike: Decimal, expiry: date, option_type: InstrumentType
) -> Decimal | None:
    """Linear interpolation across strikes; nearest edge value outside the range."""
    points = sorted(surface.for_expiry(expiry, option_type), key=lambda p: p.strike)
    if not points:
        return None
    if len(points) == 1:
        return points[0].iv

    for lower, upper in zip(points, points[1:]):
        if lower.strike <= strike <= upper.strike:
            if upper.strike == lower.strike:
                return lower.iv
            weight = (strike - lower.strike) / (upper.strike - lower.strike)
            return lower.iv + (upper.iv - lower.iv) * weight

    return points[0].iv if strike < points[0].strike else points[-1].iv
