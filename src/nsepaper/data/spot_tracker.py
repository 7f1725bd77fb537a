"""Rolling spot velocity and acceleration per underlying."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from decimal import Decimal

from nsepaper.constants import SlippageParams, SpotDirection, Underlying, VelocityCategory
from nsepaper.data.market_data import SpotMovement, SpotSample

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

SAMPLE_INTERVAL_MS = 500
SAMPLE_WINDOW_SIZE = 10
VELOCITY_WINDOW_MS = 5000

DIRECTION_THRESHOLD = Decimal("1")
ACCELERATION_THRESHOLD = Decimal("1")
PANIC_ACCELERATION = Decimal("5")

VELOCITY_MULTIPLIERS = {
    VelocityCategory.LOW: Decimal("1.0"),
    VelocityCategory.MEDIUM: Decimal("1.2"),
    VelocityCategory.HIGH: Decimal("1.5"),
    VelocityCategory.EXTREME: Decimal("2.0"),
}

IV_INFLATION = {
    VelocityCategory.LOW: Decimal("1.0"),
    VelocityCategory.MEDIUM: Decimal("1.15"),
    VelocityCategory.HIGH: Decimal("1.3"),
    VelocityCategory.EXTREME: Decimal("1.5"),
}


def velocity_category(velocity: Decimal) -> VelocityCategory:
    """Bucket an absolute velocity (points per second)."""
    v = abs(velocity)
    if v >= SlippageParams.VELOCITY_EXTREME:
        return VelocityCategory.EXTREME
    if v >= SlippageParams.VELOCITY_HIGH:
        return VelocityCategory.HIGH
    if v >= SlippageParams.VELOCITY_MEDIUM:
        return VelocityCategory.MEDIUM
    return VelocityCategory.LOW


class SpotTracker:
    """
    Samples spot prices at a fixed cadence and derives movement metrics.

    Updates arriving sooner than the sample interval after the last accepted
    sample are ignored, so velocity only changes at the sampling cadence.
    """

    def __init__(
        self,
        sample_interval_ms: int = SAMPLE_INTERVAL_MS,
        window_size: int = SAMPLE_WINDOW_SIZE,
        velocity_window_ms: int = VELOCITY_WINDOW_MS,
    ) -> None:
        self.sample_interval_ms = sample_interval_ms
        self.window_size = window_size
        self.velocity_window_ms = velocity_window_ms

        self._samples: dict[Underlying, deque[SpotSample]] = {}
        self._last_sample_time: dict[Underlying, datetime] = {}
        self._movements: dict[Underlying, SpotMovement] = {}

    def update(self, underlying: Underlying, price: Decimal, timestamp: datetime) -> bool:
        """Offer a spot price; returns True when it was accepted as a sample."""
        last = self._last_sample_time.get(underlying)
        if last is not None and (timestamp - last).total_seconds() * 1000 < self.sample_interval_ms:
            return False

        samples = self._samples.setdefault(underlying, deque(maxlen=self.window_size))
        samples.append(SpotSample(price=price, timestamp=timestamp))
        self._last_sample_time[underlying] = timestamp

        self._calculate_movement(underlying)
        return True

    def _calculate_movement(self, underlying: Underlying) -> None:
        samples = self._samples[underlying]
        if len(samples) < 2:
            return

        current = samples[-1]
        previous = samples[-2]

        window_start = current.timestamp.timestamp() - self.velocity_window_ms / 1000
        oldest = samples[0]
        for sample in samples:
            if sample.timestamp.timestamp() >= window_start:
                oldest = sample
                break

        elapsed = Decimal(str((current.timestamp - oldest.timestamp).total_seconds()))
        velocity = (current.price - oldest.price) / elapsed if elapsed > 0 else ZERO

        prior = self._movements.get(underlying)
        acceleration = velocity - (prior.velocity if prior else ZERO)

        if velocity > DIRECTION_THRESHOLD:
            direction = SpotDirection.UP
        elif velocity < -DIRECTION_THRESHOLD:
            direction = SpotDirection.DOWN
        else:
            direction = SpotDirection.FLAT

        self._movements[underlying] = SpotMovement(
            underlying=underlying,
            current=current.price,
            previous=previous.price,
            timestamp=current.timestamp,
            velocity=velocity,
            acceleration=acceleration,
            direction=direction,
            samples=list(samples),
        )

        if abs(velocity) > SlippageParams.VELOCITY_HIGH:
            logger.warning(
                f"High velocity on {underlying.value}: {velocity:.2f} pts/s {direction.value} "
                f"at {current.price}"
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_movement(self, underlying: Underlying) -> SpotMovement | None:
        return self._movements.get(underlying)

    def get_velocity(self, underlying: Underlying) -> Decimal:
        movement = self._movements.get(underlying)
        return movement.velocity if movement else ZERO

    def get_acceleration(self, underlying: Underlying) -> Decimal:
        movement = self._movements.get(underlying)
        return movement.acceleration if movement else ZERO

    def get_direction(self, underlying: Underlying) -> SpotDirection:
        movement = self._movements.get(underlying)
        return movement.direction if movement else SpotDirection.FLAT

    def get_velocity_category(self, underlying: Underlying) -> VelocityCategory:
        return velocity_category(self.get_velocity(underlying))

    def get_velocity_multiplier(self, underlying: Underlying) -> Decimal:
        return VELOCITY_MULTIPLIERS[self.get_velocity_category(underlying)]

    def get_iv_inflation_factor(self, underlying: Underlying) -> Decimal:
        factor = IV_INFLATION[self.get_velocity_category(underlying)]
        if abs(self.get_acceleration(underlying)) > ACCELERATION_THRESHOLD:
            factor *= Decimal("1.1")
        return factor

    def is_panic_mode(self, underlying: Underlying) -> bool:
        return (
            abs(self.get_velocity(underlying)) > SlippageParams.VELOCITY_EXTREME
            and abs(self.get_acceleration(underlying)) > PANIC_ACCELERATION
        )

    def get_range(self, underlying: Underlying) -> tuple[Decimal, Decimal, Decimal]:
        """(high, low, range) over the current sample window."""
        samples = self._samples.get(underlying)
        if not samples:
            return ZERO, ZERO, ZERO
        prices = [s.price for s in samples]
        high, low = max(prices), min(prices)
        return high, low, high - low

    def get_volatility_estimate(self, underlying: Underlying) -> Decimal:
        """Population std-dev of sample-to-sample returns, in percent."""
        samples = list(self._samples.get(underlying, ()))
        if len(samples) < 3:
            return ZERO

        returns = [
            (curr.price - prev.price) / prev.price
            for prev, curr in zip(samples, samples[1:])
            if prev.price > 0
        ]
        if not returns:
            return ZERO

        mean = sum(returns, ZERO) / len(returns)
        variance = sum(((r - mean) ** 2 for r in returns), ZERO) / len(returns)
        return variance.sqrt() * 100

    def all_movements(self) -> dict[Underlying, SpotMovement]:
        return dict(self._movements)

    def clear(self, underlying: Underlying | None = None) -> None:
        if underlying is None:
            self._samples.clear()
            self._last_sample_time.clear()
            self._movements.clear()
            return
        self._samples.pop(underlying, None)
        self._last_sample_time.pop(underlying, None)
        self._movements.pop(underlying, None)
