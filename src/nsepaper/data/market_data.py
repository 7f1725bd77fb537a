"""Market data structures and types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from nsepaper.constants import InstrumentType, SpotDirection, Underlying

ZERO = Decimal("0")


@dataclass(frozen=True)
class DepthLevel:
    """One price level of the order book."""

    price: Decimal
    quantity: int
    orders: int = 0


@dataclass(frozen=True)
class OrderBookDepth:
    """Top-of-book depth; bids high to low, asks low to high."""

    buy: tuple[DepthLevel, ...] = ()
    sell: tuple[DepthLevel, ...] = ()

    def levels(self, side_is_buy: bool) -> tuple[DepthLevel, ...]:
        return self.buy if side_is_buy else self.sell


@dataclass(frozen=True)
class InstrumentTick:
    """Normalized market update for one instrument."""

    token: int
    symbol: str
    underlying: Underlying
    instrument_type: InstrumentType
    ltp: Decimal
    timestamp: datetime
    bid: Decimal = ZERO
    ask: Decimal = ZERO
    bid_qty: int = 0
    ask_qty: int = 0
    volume: int = 0
    oi: int = 0
    strike: Decimal | None = None
    expiry: date | None = None
    depth: OrderBookDepth | None = None

    @property
    def has_two_sided_quote(self) -> bool:
        return self.bid > 0 and self.ask > 0


@dataclass(frozen=True)
class Greeks:
    """Option sensitivities; theta per day, vega and rho per 1%, iv in percent."""

    delta: Decimal = ZERO
    gamma: Decimal = ZERO
    theta: Decimal = ZERO
    vega: Decimal = ZERO
    rho: Decimal = ZERO
    iv: Decimal = ZERO


@dataclass
class InstrumentState:
    """Latest tick for an instrument plus computed pricing fields."""

    tick: InstrumentTick
    last_update: datetime
    iv: Decimal | None = None
    greeks: Greeks | None = None
    greeks_stale: bool = False

    @property
    def symbol(self) -> str:
        return self.tick.symbol

    @property
    def mid(self) -> Decimal:
        """Mid price, or LTP when the quote is one-sided."""
        if self.tick.has_two_sided_quote:
            return (self.tick.bid + self.tick.ask) / 2
        return self.tick.ltp


@dataclass(frozen=True)
class SpotSample:
    price: Decimal
    timestamp: datetime


@dataclass
class SpotMovement:
    """Rolling velocity state for one underlying."""

    underlying: Underlying
    current: Decimal
    previous: Decimal
    timestamp: datetime
    velocity: Decimal = ZERO
    acceleration: Decimal = ZERO
    direction: SpotDirection = SpotDirection.FLAT
    samples: list[SpotSample] = field(default_factory=list)
