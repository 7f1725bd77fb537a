"""
Black-Scholes valuation and Greeks for European index options.

All arithmetic is Decimal. The normal CDF uses the Abramowitz-Stegun rational
approximation (7.26.1 form, max error about 7.5e-8) so results do not depend
on a platform math library.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal

from nsepaper.constants import InstrumentType, PricingParams
from nsepaper.data.market_data import Greeks

ZERO = Decimal("0")
ONE = Decimal("1")
TWO = Decimal("2")
HUNDRED = Decimal("100")
SQRT_2PI = Decimal("2.506628274631000502415765284811")

_A1 = Decimal("0.254829592")
_A2 = Decimal("-0.284496736")
_A3 = Decimal("1.421413741")
_A4 = Decimal("-1.453152027")
_A5 = Decimal("1.061405429")
_P = Decimal("0.3275911")

ATM_THRESHOLD = Decimal("0.01")


@dataclass(frozen=True)
class BSParams:
    """Inputs to the model; time in years, rate and volatility as fractions."""

    spot: Decimal
    strike: Decimal
    time_to_expiry: Decimal
    volatility: Decimal
    option_type: InstrumentType
    risk_free_rate: Decimal = PricingParams.RISK_FREE_RATE

    def with_volatility(self, volatility: Decimal) -> BSParams:
        return replace(self, volatility=volatility)

    @property
    def at_expiry(self) -> bool:
        return self.time_to_expiry <= PricingParams.MIN_TIME_TO_EXPIRY

    @property
    def is_call(self) -> bool:
        return self.option_type == InstrumentType.CE


def norm_cdf(x: Decimal) -> Decimal:
    """Standard normal cumulative distribution."""
    abs_x = abs(x)
    t = ONE / (ONE + _P * abs_x)
    poly = t * (_A1 + t * (_A2 + t * (_A3 + t * (_A4 + t * _A5))))
    y = ONE - poly * (-(abs_x * abs_x) / TWO).exp()
    return y if x >= 0 else ONE - y


def norm_pdf(x: Decimal) -> Decimal:
    """Standard normal density."""
    return (-(x * x) / TWO).exp() / SQRT_2PI


def d1_d2(params: BSParams) -> tuple[Decimal, Decimal]:
    """d1 and d2; both zero at expiry or for degenerate inputs."""
    if params.at_expiry or params.spot <= 0 or params.strike <= 0:
        return ZERO, ZERO

    vol_sqrt_t = params.volatility * params.time_to_expiry.sqrt()
    if vol_sqrt_t == 0:
        return ZERO, ZERO

    log_sk = (params.spot / params.strike).ln()
    drift = params.risk_free_rate + params.volatility * params.volatility / TWO
    d1 = (log_sk + drift * params.time_to_expiry) / vol_sqrt_t
    return d1, d1 - vol_sqrt_t


def _discount_factor(params: BSParams) -> Decimal:
    return (-params.risk_free_rate * params.time_to_expiry).exp()


def call_price(params: BSParams) -> Decimal:
    if params.at_expiry:
        return max(ZERO, params.spot - params.strike)
    d1, d2 = d1_d2(params)
    price = params.spot * norm_cdf(d1) - params.strike * _discount_factor(params) * norm_cdf(d2)
    return max(ZERO, price)


def put_price(params: BSParams) -> Decimal:
    if params.at_expiry:
        return max(ZERO, params.strike - params.spot)
    d1, d2 = d1_d2(params)
    price = params.strike * _discount_factor(params) * norm_cdf(-d2) - params.spot * norm_cdf(-d1)
    return max(ZERO, price)


def option_price(params: BSParams) -> Decimal:
    """Theoretical premium; never negative."""
    return call_price(params) if params.is_call else put_price(params)


def _expiry_delta(params: BSParams) -> Decimal:
    if not is_itm(params.spot, params.strike, params.option_type):
        return ZERO
    return ONE if params.is_call else -ONE


def greeks(params: BSParams) -> Greeks:
    """
    All Greeks in trader units.

    theta is per calendar day, vega per 1 vol point, rho per 1% rate, and iv
    echoes the input volatility as a percentage. At expiry delta is a step
    function and every other sensitivity is zero.
    """
    iv_pct = params.volatility * HUNDRED
    if params.at_expiry:
        return Greeks(delta=_expiry_delta(params), iv=iv_pct)

    d1, d2 = d1_d2(params)
    sqrt_t = params.time_to_expiry.sqrt()
    df = _discount_factor(params)
    pdf_d1 = norm_pdf(d1)
    n_d1 = norm_cdf(d1)

    denom = params.spot * params.volatility * sqrt_t
    gamma = pdf_d1 / denom if denom != 0 else ZERO

    decay = -(params.spot * pdf_d1 * params.volatility) / (sqrt_t * TWO)
    carry = params.risk_free_rate * params.strike * df

    if params.is_call:
        delta = n_d1
        theta = decay - carry * norm_cdf(d2)
        rho = params.strike * params.time_to_expiry * df * norm_cdf(d2) / HUNDRED
    else:
        delta = n_d1 - ONE
        theta = decay + carry * norm_cdf(-d2)
        rho = -(params.strike * params.time_to_expiry * df * norm_cdf(-d2)) / HUNDRED

    return Greeks(
        delta=delta,
        gamma=gamma,
        theta=theta / PricingParams.DAYS_IN_YEAR,
        vega=params.spot * sqrt_t * pdf_d1 / HUNDRED,
        rho=rho,
        iv=iv_pct,
    )


def option_delta(params: BSParams) -> Decimal:
    if params.at_expiry:
        return _expiry_delta(params)
    d1, _ = d1_d2(params)
    n_d1 = norm_cdf(d1)
    return n_d1 if params.is_call else n_d1 - ONE


def option_gamma(params: BSParams) -> Decimal:
    if params.at_expiry:
        return ZERO
    d1, _ = d1_d2(params)
    denom = params.spot * params.volatility * params.time_to_expiry.sqrt()
    return norm_pdf(d1) / denom if denom != 0 else ZERO


def option_vega(params: BSParams) -> Decimal:
    """Price change per 1 vol point."""
    if params.at_expiry:
        return ZERO
    d1, _ = d1_d2(params)
    return params.spot * params.time_to_expiry.sqrt() * norm_pdf(d1) / HUNDRED


# ============================================
# Moneyness helpers
# ============================================


def intrinsic_value(spot: Decimal, strike: Decimal, option_type: InstrumentType) -> Decimal:
    if option_type == InstrumentType.CE:
        return max(ZERO, spot - strike)
    return max(ZERO, strike - spot)


def extrinsic_value(
    premium: Decimal, spot: Decimal, strike: Decimal, option_type: InstrumentType
) -> Decimal:
    return max(ZERO, premium - intrinsic_value(spot, strike, option_type))


def moneyness(spot: Decimal, strike: Decimal) -> Decimal:
    """Spot / strike; zero for a zero strike."""
    if strike == 0:
        return ZERO
    return spot / strike


def is_itm(spot: Decimal, strike: Decimal, option_type: InstrumentType) -> bool:
    if option_type == InstrumentType.CE:
        return spot > strike
    return strike > spot


def is_atm(spot: Decimal, strike: Decimal, threshold: Decimal = ATM_THRESHOLD) -> bool:
    if strike == 0:
        return False
    return abs(spot / strike - ONE) < threshold


def is_otm(spot: Decimal, strike: Decimal, option_type: InstrumentType) -> bool:
    return not is_itm(spot, strike, option_type) and not is_atm(spot, strike)
