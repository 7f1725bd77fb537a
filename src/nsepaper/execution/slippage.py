"""
Slippage model for simulated option and futures fills.

Six additive components (base, spread, velocity, IV, size, depth) are each
computed independently from the order and the current book. On expiry day
every component doubles and the day before they are scaled by 1.5. The total
is tick-rounded before and after the expiry multiplier so the expiry-day
figure is exactly twice the regular one.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from nsepaper.config_loader import SlippageConfig
from nsepaper.constants import (
    ContractSpec,
    InstrumentType,
    OrderSide,
    PricingParams,
    SlippageParams,
)
from nsepaper.data.market_data import DepthLevel, OrderBookDepth
from nsepaper.data.spot_tracker import velocity_category
from nsepaper.numeric import round_to_tick

ZERO = Decimal("0")
ONE = Decimal("1")
TWO = Decimal("2")
HUNDRED = Decimal("100")

SIZE_MID_FRACTION = Decimal("0.001")
SIZE_FALLBACK_UNIT = Decimal("0.10")
VELOCITY_HIGH_MULTIPLIER = Decimal("1.5")
VELOCITY_EXTREME_MULTIPLIER = Decimal("2")
DEPTH_THRESHOLD = Decimal("0.5")

_DEFAULT_CONFIG = SlippageConfig()


@dataclass(frozen=True)
class SlippageInputs:
    """Everything the model needs to price one order."""

    side: OrderSide
    quantity: int
    bid: Decimal
    ask: Decimal
    instrument_type: InstrumentType
    spot_velocity: Decimal = ZERO
    iv_percent: Decimal = PricingParams.DEFAULT_IV_PERCENT
    daily_volume: int = 0
    depth: OrderBookDepth | None = None
    days_to_expiry: int = 30
    tick_size: Decimal = ContractSpec.TICK_SIZE


@dataclass(frozen=True)
class SlippageComponents:
    base: Decimal = ZERO
    spread: Decimal = ZERO
    velocity: Decimal = ZERO
    iv: Decimal = ZERO
    size: Decimal = ZERO
    depth: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.base + self.spread + self.velocity + self.iv + self.size + self.depth

    def scaled(self, factor: Decimal) -> SlippageComponents:
        return SlippageComponents(
            base=self.base * factor,
            spread=self.spread * factor,
            velocity=self.velocity * factor,
            iv=self.iv * factor,
            size=self.size * factor,
            depth=self.depth * factor,
        )


@dataclass(frozen=True)
class SlippageResult:
    total: Decimal
    components: SlippageComponents
    expiry_multiplier: Decimal = ONE


def visible_liquidity(levels: tuple[DepthLevel, ...], count: int = SlippageParams.DEPTH_LEVELS) -> int:
    """Quantity available on the first `count` levels."""
    return sum(level.quantity for level in levels[:count])


def expiry_multiplier(
    instrument_type: InstrumentType, days_to_expiry: int, config: SlippageConfig | None = None
) -> Decimal:
    """Expiry-proximity scaling; options only."""
    cfg = config or _DEFAULT_CONFIG
    if not instrument_type.is_option:
        return ONE
    if days_to_expiry <= 0:
        return cfg.expiry_day_multiplier
    if days_to_expiry <= 1:
        return cfg.day_before_multiplier
    return ONE


def calculate_slippage(inputs: SlippageInputs, config: SlippageConfig | None = None) -> SlippageResult:
    """Compute the total adverse slippage per unit for an order."""
    cfg = config or _DEFAULT_CONFIG
    if not cfg.enabled:
        return SlippageResult(total=ZERO, components=SlippageComponents())

    spread = max(ZERO, inputs.ask - inputs.bid)
    mid = (inputs.bid + inputs.ask) / TWO

    spread_component = ZERO
    if mid > 0 and spread / mid > cfg.wide_spread_threshold:
        spread_component = spread * cfg.spread_fraction

    velocity_component = ZERO
    velocity = abs(inputs.spot_velocity)
    if velocity > SlippageParams.VELOCITY_LOW:
        velocity_component = velocity / HUNDRED * cfg.velocity_scale
        if velocity > SlippageParams.VELOCITY_EXTREME:
            velocity_component *= VELOCITY_EXTREME_MULTIPLIER
        elif velocity > SlippageParams.VELOCITY_HIGH:
            velocity_component *= VELOCITY_HIGH_MULTIPLIER

    iv_component = ZERO
    if inputs.iv_percent > cfg.high_iv_threshold:
        iv_component = (inputs.iv_percent - cfg.high_iv_threshold) * cfg.iv_multiplier

    size_component = ZERO
    if inputs.daily_volume > 0:
        per_minute = Decimal(inputs.daily_volume) / SlippageParams.MINUTES_PER_SESSION
        ratio = Decimal(inputs.quantity) / per_minute
        if ratio > 1:
            unit = mid * SIZE_MID_FRACTION if mid > 0 else SIZE_FALLBACK_UNIT
            size_component = min((ratio - ONE) * cfg.size_multiplier * unit, mid * SlippageParams.SIZE_CAP_OF_MID)

    depth_component = ZERO
    if inputs.depth is not None:
        # BUY consumes the ask side, SELL the bid side
        levels = inputs.depth.levels(side_is_buy=inputs.side == OrderSide.SELL)
        liquidity = visible_liquidity(levels)
        if liquidity > 0 and Decimal(inputs.quantity) > Decimal(liquidity) * DEPTH_THRESHOLD:
            excess = Decimal(inputs.quantity) / Decimal(liquidity) - DEPTH_THRESHOLD
            depth_component = excess * cfg.depth_multiplier * spread

    components = SlippageComponents(
        base=cfg.base,
        spread=spread_component,
        velocity=velocity_component,
        iv=iv_component,
        size=size_component,
        depth=depth_component,
    )

    multiplier = expiry_multiplier(inputs.instrument_type, inputs.days_to_expiry, cfg)
    total = round_to_tick(components.total, inputs.tick_size)
    if multiplier != ONE:
        total = round_to_tick(total * multiplier, inputs.tick_size)
        components = components.scaled(multiplier)

    return SlippageResult(total=total, components=components, expiry_multiplier=multiplier)


def fill_price(
    side: OrderSide,
    bid: Decimal,
    ask: Decimal,
    slippage: Decimal,
    tick_size: Decimal = ContractSpec.TICK_SIZE,
) -> Decimal:
    """BUY pays ask + slippage; SELL receives bid - slippage, never below zero."""
    if side == OrderSide.BUY:
        return round_to_tick(ask + slippage, tick_size)
    return round_to_tick(max(ZERO, bid - slippage), tick_size)


# ============================================
# Depth walk
# ============================================


@dataclass(frozen=True)
class DepthFill:
    price: Decimal
    quantity: int
    level: int


def depth_fills(
    side: OrderSide,
    quantity: int,
    depth: OrderBookDepth,
    slippage: Decimal,
    tick_size: Decimal = ContractSpec.TICK_SIZE,
) -> list[DepthFill]:
    """
    Walk the opposite side of the book.

    Slippage is applied to the first level only. Quantity beyond visible depth
    fills at the worst visible price pushed 0.5% further against the order.
    """
    levels = depth.levels(side_is_buy=side == OrderSide.SELL)
    fills: list[DepthFill] = []
    remaining = quantity

    for index, level in enumerate(levels):
        if remaining <= 0:
            break
        if level.quantity <= 0:
            continue
        qty = min(remaining, level.quantity)
        price = level.price
        if index == 0:
            price = price + slippage if side == OrderSide.BUY else max(ZERO, price - slippage)
        fills.append(DepthFill(price=round_to_tick(price, tick_size), quantity=qty, level=index))
        remaining -= qty

    if remaining > 0 and levels:
        worst = levels[-1].price
        if side == OrderSide.BUY:
            penalty = worst * (ONE + SlippageParams.RESIDUAL_PENALTY)
        else:
            penalty = worst * (ONE - SlippageParams.RESIDUAL_PENALTY)
        fills.append(
            DepthFill(price=round_to_tick(penalty, tick_size), quantity=remaining, level=len(levels))
        )

    return fills


def average_fill_price(fills: list[DepthFill], tick_size: Decimal = ContractSpec.TICK_SIZE) -> Decimal:
    """Quantity-weighted average of depth fills, tick-rounded."""
    total_qty = sum(f.quantity for f in fills)
    if total_qty == 0:
        return ZERO
    total_value = sum((f.price * f.quantity for f in fills), ZERO)
    return round_to_tick(total_value / total_qty, tick_size)


# ============================================
# Pre-trade estimate
# ============================================


class EstimateConfidence(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class SlippageEstimate:
    estimated: Decimal
    low: Decimal
    high: Decimal
    confidence: EstimateConfidence


ESTIMATE_SPREAD_THRESHOLD = Decimal("0.10")
ESTIMATE_VELOCITY_SCALE = Decimal("0.30")
ESTIMATE_IV_THRESHOLD = Decimal("30")
ESTIMATE_RANGE_LOW = Decimal("0.5")
ESTIMATE_RANGE_HIGH = Decimal("2.5")


def estimate_slippage(spread: Decimal, iv_percent: Decimal, spot_velocity: Decimal) -> SlippageEstimate:
    """Quick pre-trade estimate for display; coarser than calculate_slippage."""
    estimated = SlippageParams.BASE
    if spread > ESTIMATE_SPREAD_THRESHOLD:
        estimated += spread * SlippageParams.SPREAD_FRACTION

    velocity = abs(spot_velocity)
    if velocity > SlippageParams.VELOCITY_MEDIUM:
        estimated += velocity / HUNDRED * ESTIMATE_VELOCITY_SCALE

    if iv_percent > ESTIMATE_IV_THRESHOLD:
        estimated += (iv_percent - ESTIMATE_IV_THRESHOLD) * SlippageParams.IV_MULTIPLIER

    if velocity > SlippageParams.VELOCITY_HIGH:
        confidence = EstimateConfidence.LOW
    elif velocity > SlippageParams.VELOCITY_MEDIUM:
        confidence = EstimateConfidence.MEDIUM
    else:
        confidence = EstimateConfidence.HIGH

    return SlippageEstimate(
        estimated=round_to_tick(estimated),
        low=round_to_tick(estimated * ESTIMATE_RANGE_LOW),
        high=round_to_tick(estimated * ESTIMATE_RANGE_HIGH),
        confidence=confidence,
    )


# ============================================
# Analytics
# ============================================


@dataclass(frozen=True)
class SlippageRecord:
    timestamp: datetime
    symbol: str
    side: OrderSide
    quantity: int
    expected: Decimal
    actual: Decimal
    spot_velocity: Decimal
    iv_percent: Decimal
    components: SlippageComponents = field(default_factory=SlippageComponents)


class SlippageAnalyzer:
    """Bounded history of realized slippage."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: deque[SlippageRecord] = deque(maxlen=max_records)

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: SlippageRecord) -> None:
        self._records.append(record)

    def average(self) -> Decimal:
        if not self._records:
            return ZERO
        return sum((r.actual for r in self._records), ZERO) / len(self._records)

    def average_by_velocity(self) -> dict[str, Decimal]:
        """Average realized slippage per velocity bucket."""
        buckets: dict[str, list[Decimal]] = {}
        for record in self._records:
            key = velocity_category(record.spot_velocity).value
            buckets.setdefault(key, []).append(record.actual)
        return {key: sum(values, ZERO) / len(values) for key, values in buckets.items()}

    def accuracy(self) -> Decimal:
        """One minus the mean relative error of expected versus actual."""
        if not self._records:
            return ZERO
        total_error = ZERO
        for record in self._records:
            denominator = record.expected if record.expected != 0 else ONE
            total_error += abs(record.actual - record.expected) / denominator
        return ONE - total_error / len(self._records)

    def clear(self) -> None:
        self._records.clear()
