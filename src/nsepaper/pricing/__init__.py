"""Option pricing: Black-Scholes, implied volatility and seller pain."""

from nsepaper.pricing.black_scholes import (
    BSParams,
    greeks,
    intrinsic_value,
    norm_cdf,
    norm_pdf,
    option_price,
)
from nsepaper.pricing.iv_calculator import implied_volatility
from nsepaper.pricing.seller_pain import expiry_gamma_pain, inflated_iv, seller_pain, strategy_pain

__all__ = [
    "BSParams",
    "expiry_gamma_pain",
    "greeks",
    "implied_volatility",
    "inflated_iv",
    "intrinsic_value",
    "norm_cdf",
    "norm_pdf",
    "option_price",
    "seller_pain",
    "strategy_pain",
]
