"""Instrument reference data: contract specs, lookups, symbols and option chains."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from itertools import count

from nsepaper.config_loader import InstrumentsConfig
from nsepaper.constants import ContractSpec, InstrumentType, Underlying
from nsepaper.errors import InstrumentNotFoundError

logger = logging.getLogger(__name__)

_FUTURES_RE = re.compile(r"^([A-Z]+)(\d{2})([A-Z]{3})FUT$")
_OPTION_RE = re.compile(r"^([A-Z]+)(\d{2})([A-Z]{3})(\d{2})(\d+)(CE|PE)$")

_MONTHS = ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]


@dataclass(frozen=True)
class Instrument:
    """Contract reference data for one tradable or reference instrument."""

    token: int
    symbol: str
    underlying: Underlying
    instrument_type: InstrumentType
    lot_size: int
    tick_size: Decimal
    strike: Decimal | None = None
    expiry: date | None = None

    @property
    def is_option(self) -> bool:
        return self.instrument_type.is_option


@dataclass(frozen=True)
class ParsedSymbol:
    underlying: str
    expiry: date
    instrument_type: InstrumentType
    strike: Decimal | None = None


def _format_strike(strike: Decimal) -> str:
    if strike == strike.to_integral_value():
        return str(int(strike))
    return str(strike.normalize())


def option_symbol(
    underlying: Underlying | str, expiry: date, strike: Decimal, option_type: InstrumentType
) -> str:
    """Option trading symbol, e.g. NIFTY24JAN2525000CE."""
    name = underlying.value if isinstance(underlying, Underlying) else underlying
    month = _MONTHS[expiry.month - 1]
    return f"{name}{expiry:%y}{month}{expiry:%d}{_format_strike(strike)}{option_type.value}"


def futures_symbol(underlying: Underlying | str, expiry: date) -> str:
    """Futures trading symbol, e.g. NIFTY24JANFUT."""
    name = underlying.value if isinstance(underlying, Underlying) else underlying
    return f"{name}{expiry:%y}{_MONTHS[expiry.month - 1]}FUT"


def parse_symbol(symbol: str) -> ParsedSymbol | None:
    """
    Parse an option or futures symbol.

    Futures symbols carry no day, so the first of the month is returned as expiry.
    Returns None when the symbol matches neither format.
    """
    match = _FUTURES_RE.match(symbol)
    if match:
        name, yy, mon = match.groups()
        if mon not in _MONTHS:
            return None
        return ParsedSymbol(
            underlying=name,
            expiry=date(2000 + int(yy), _MONTHS.index(mon) + 1, 1),
            instrument_type=InstrumentType.FUT,
        )

    match = _OPTION_RE.match(symbol)
    if match:
        name, yy, mon, dd, strike, opt = match.groups()
        if mon not in _MONTHS:
            return None
        try:
            expiry = date(2000 + int(yy), _MONTHS.index(mon) + 1, int(dd))
        except ValueError:
            return None
        return ParsedSymbol(
            underlying=name,
            expiry=expiry,
            instrument_type=InstrumentType(opt),
            strike=Decimal(strike),
        )
    return None


class InstrumentRegistry:
    """
    In-memory instrument master.

    Instruments are registered explicitly (or generated with build_chain) and
    resolved by symbol, token or (underlying, expiry, strike, type).
    """

    def __init__(self, config: InstrumentsConfig | None = None) -> None:
        self.config = config or InstrumentsConfig()
        self._by_token: dict[int, Instrument] = {}
        self._by_symbol: dict[str, Instrument] = {}
        self._options: dict[tuple[Underlying, date, Decimal, InstrumentType], Instrument] = {}
        self._futures: dict[tuple[Underlying, date], Instrument] = {}
        self._token_seq = count(10_000_000)

        for underlying in Underlying:
            self.register(
                Instrument(
                    token=ContractSpec.SPOT_TOKENS[underlying],
                    symbol=underlying.value,
                    underlying=underlying,
                    instrument_type=InstrumentType.SPOT,
                    lot_size=self.lot_size(underlying),
                    tick_size=self.tick_size(underlying),
                )
            )

    def __len__(self) -> int:
        return len(self._by_token)

    # ------------------------------------------------------------------
    # Contract specs
    # ------------------------------------------------------------------

    def lot_size(self, underlying: Underlying) -> int:
        return self.config.lot_size(underlying)

    def strike_interval(self, underlying: Underlying) -> Decimal:
        return self.config.strike_interval(underlying)

    def tick_size(self, underlying: Underlying) -> Decimal:
        return self.config.tick_size(underlying)

    def atm_strike(self, underlying: Underlying, spot: Decimal) -> Decimal:
        """Spot rounded to the nearest strike interval."""
        interval = self.strike_interval(underlying)
        return (spot / interval).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * interval

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    def register(self, instrument: Instrument) -> Instrument:
        self._by_token[instrument.token] = instrument
        self._by_symbol[instrument.symbol] = instrument
        if instrument.is_option and instrument.expiry and instrument.strike is not None:
            key = (instrument.underlying, instrument.expiry, instrument.strike, instrument.instrument_type)
            self._options[key] = instrument
        elif instrument.instrument_type == InstrumentType.FUT and instrument.expiry:
            self._futures[(instrument.underlying, instrument.expiry)] = instrument
        return instrument

    def get_by_token(self, token: int) -> Instrument:
        instrument = self._by_token.get(token)
        if instrument is None:
            raise InstrumentNotFoundError(token)
        return instrument

    def get_by_symbol(self, symbol: str) -> Instrument:
        instrument = self._by_symbol.get(symbol)
        if instrument is None:
            raise InstrumentNotFoundError(symbol)
        return instrument

    def find_by_symbol(self, symbol: str) -> Instrument | None:
        return self._by_symbol.get(symbol)

    def find_by_token(self, token: int) -> Instrument | None:
        return self._by_token.get(token)

    def get_option(
        self, underlying: Underlying, expiry: date, strike: Decimal, option_type: InstrumentType
    ) -> Instrument:
        instrument = self._options.get((underlying, expiry, Decimal(strike), option_type))
        if instrument is None:
            raise InstrumentNotFoundError(
                f"{underlying.value} {expiry.isoformat()} {strike} {option_type.value}"
            )
        return instrument

    def get_futures(self, underlying: Underlying, expiry: date) -> Instrument:
        instrument = self._futures.get((underlying, expiry))
        if instrument is None:
            raise InstrumentNotFoundError(f"{underlying.value} {expiry.isoformat()} FUT")
        return instrument

    def get_spot(self, underlying: Underlying) -> Instrument:
        return self.get_by_token(ContractSpec.SPOT_TOKENS[underlying])

    def expiries(self, underlying: Underlying) -> list[date]:
        """Available option expiries, earliest first."""
        return sorted({key[1] for key in self._options if key[0] == underlying})

    def strikes(self, underlying: Underlying, expiry: date) -> list[Decimal]:
        return sorted({key[2] for key in self._options if key[0] == underlying and key[1] == expiry})

    def strikes_around_atm(
        self, underlying: Underlying, expiry: date, spot: Decimal, count_each_side: int
    ) -> list[Decimal]:
        atm = self.atm_strike(underlying, spot)
        interval = self.strike_interval(underlying)
        available = set(self.strikes(underlying, expiry))
        wanted = (atm + i * interval for i in range(-count_each_side, count_each_side + 1))
        return [s for s in wanted if s in available]

    def options(self, underlying: Underlying | None = None, expiry: date | None = None) -> list[Instrument]:
        return [
            inst
            for key, inst in self._options.items()
            if (underlying is None or key[0] == underlying) and (expiry is None or key[1] == expiry)
        ]

    def all_instruments(self) -> list[Instrument]:
        return list(self._by_token.values())

    # ------------------------------------------------------------------
    # Synthetic chains
    # ------------------------------------------------------------------

    def build_chain(
        self,
        underlying: Underlying,
        expiries: list[date],
        spot: Decimal,
        strikes_each_side: int | None = None,
        futures_expiry: date | None = None,
    ) -> list[Instrument]:
        """Register CE/PE contracts around ATM for each expiry and an optional future."""
        strikes_each_side = (
            self.config.strikes_around_atm if strikes_each_side is None else strikes_each_side
        )
        atm = self.atm_strike(underlying, spot)
        interval = self.strike_interval(underlying)
        created: list[Instrument] = []

        for expiry in expiries:
            for i in range(-strikes_each_side, strikes_each_side + 1):
                strike = atm + i * interval
                for option_type in (InstrumentType.CE, InstrumentType.PE):
                    if (underlying, expiry, strike, option_type) in self._options:
                        continue
                    created.append(
                        self.register(
                            Instrument(
                                token=next(self._token_seq),
                                symbol=option_symbol(underlying, expiry, strike, option_type),
                                underlying=underlying,
                                instrument_type=option_type,
                                lot_size=self.lot_size(underlying),
                                tick_size=self.tick_size(underlying),
                                strike=strike,
                                expiry=expiry,
                            )
                        )
                    )

        if futures_expiry is not None and (underlying, futures_expiry) not in self._futures:
            created.append(
                self.register(
                    Instrument(
                        token=next(self._token_seq),
                        symbol=futures_symbol(underlying, futures_expiry),
                        underlying=underlying,
                        instrument_type=InstrumentType.FUT,
                        lot_size=self.lot_size(underlying),
                        tick_size=self.tick_size(underlying),
                        expiry=futures_expiry,
                    )
                )
            )

        logger.info(f"Built {underlying.value} chain: {len(created)} instruments around ATM {atm}")
        return created

    def stats(self) -> dict[str, int]:
        options = sum(1 for i in self._by_token.values() if i.is_option)
        futures = sum(1 for i in self._by_token.values() if i.instrument_type == InstrumentType.FUT)
        return {"total": len(self._by_token), "options": options, "futures": futures}
