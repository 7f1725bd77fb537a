"""Session manager for the NSE trading window and derivative expiries."""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from nsepaper.config_loader import SessionConfig
from nsepaper.constants import PricingParams
from nsepaper.time.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = PricingParams.DAYS_IN_YEAR * 24 * 60 * 60


class SessionManager:
    """
    Manages the trading session and expiry calendar.

    All times are handled in the configured exchange timezone (default Asia/Kolkata).
    Weekly contracts expire on the configured weekday, monthly contracts on the last
    such weekday of the month, both at the configured expiry time.
    """

    def __init__(self, config: SessionConfig, clock: Clock | None = None) -> None:
        self.config = config
        self.tz = ZoneInfo(config.timezone)
        self.clock = clock or SystemClock(config.timezone)

        self.market_open_time = self._parse_time(config.market_open)
        self.market_close_time = self._parse_time(config.market_close)
        self.pre_open_start_time = self._parse_time(config.pre_open_start)
        self.pre_open_end_time = self._parse_time(config.pre_open_end)
        self.expiry_time = self._parse_time(config.expiry_time)

        self.trading_days = set(config.trading_days)
        self.expiry_weekday = config.weekly_expiry_weekday
        self.holidays = {date.fromisoformat(d) for d in config.holidays}

    def _parse_time(self, time_str: str) -> time:
        hour, minute = map(int, time_str.split(":"))
        return time(hour, minute)

    def now(self) -> datetime:
        """Get current time in exchange timezone."""
        return self.clock.now().astimezone(self.tz)

    def _localize(self, dt: datetime | None) -> datetime:
        if dt is None:
            return self.now()
        if dt.tzinfo is None:
            return dt.replace(tzinfo=self.tz)
        return dt.astimezone(self.tz)

    # ------------------------------------------------------------------
    # Trading window
    # ------------------------------------------------------------------

    def is_trading_day(self, dt: datetime | date | None = None) -> bool:
        """Check if the given date (default today) is a trading day."""
        d = dt if isinstance(dt, date) and not isinstance(dt, datetime) else self._localize(dt).date()
        return d.weekday() in self.trading_days and d not in self.holidays

    def is_market_open(self, dt: datetime | None = None) -> bool:
        """Regular session is [market_open, market_close)."""
        dt = self._localize(dt)
        if not self.is_trading_day(dt):
            return False
        return self.market_open_time <= dt.time() < self.market_close_time

    def is_pre_open(self, dt: datetime | None = None) -> bool:
        dt = self._localize(dt)
        if not self.is_trading_day(dt):
            return False
        return self.pre_open_start_time <= dt.time() < self.pre_open_end_time

    def minutes_to_market_close(self, dt: datetime | None = None) -> int:
        dt = self._localize(dt)
        close = datetime.combine(dt.date(), self.market_close_time, tzinfo=self.tz)
        if dt >= close:
            return 0
        return int((close - dt).total_seconds() // 60)

    def time_until_market_open(self, dt: datetime | None = None) -> timedelta:
        """Duration until the next regular session open; zero while open."""
        now = self._localize(dt)
        if self.is_market_open(now):
            return timedelta(0)

        candidate = datetime.combine(now.date(), self.market_open_time, tzinfo=self.tz)
        for _ in range(15):
            if candidate > now and self.is_trading_day(candidate):
                return candidate - now
            candidate += timedelta(days=1)
        return timedelta(hours=24)

    # ------------------------------------------------------------------
    # Expiries
    # ------------------------------------------------------------------

    def weekly_expiry(self, reference: datetime | date | None = None) -> date:
        """Next weekly expiry on or after the reference date."""
        d = self._as_date(reference)
        offset = (self.expiry_weekday - d.weekday()) % 7
        return d + timedelta(days=offset)

    def monthly_expiry(self, reference: datetime | date | None = None) -> date:
        """Last expiry weekday of the reference month."""
        d = self._as_date(reference)
        last_day = calendar.monthrange(d.year, d.month)[1]
        last = date(d.year, d.month, last_day)
        offset = (last.weekday() - self.expiry_weekday) % 7
        return last - timedelta(days=offset)

    def next_expiries(self, count: int, reference: datetime | None = None) -> list[date]:
        """
        Next weekly expiries, earliest first.

        Today's expiry is included only while it has not yet passed the expiry time.
        """
        now = self._localize(reference)
        first = self.weekly_expiry(now)
        if first == now.date() and now.time() >= self.expiry_time:
            first += timedelta(days=7)
        return [first + timedelta(days=7 * i) for i in range(count)]

    def is_expiry_day(self, dt: datetime | date | None = None) -> bool:
        return self._as_date(dt).weekday() == self.expiry_weekday

    def expiry_datetime(self, expiry: date) -> datetime:
        return datetime.combine(expiry, self.expiry_time, tzinfo=self.tz)

    def days_to_expiry(self, expiry: date, reference: datetime | date | None = None) -> int:
        """Calendar days until expiry, never negative."""
        return max(0, (expiry - self._as_date(reference)).days)

    def time_to_expiry_years(self, expiry: date, reference: datetime | None = None) -> Decimal:
        """Year fraction until the expiry time, floored at the minimum pricing horizon."""
        now = self._localize(reference)
        seconds = max(0, int((self.expiry_datetime(expiry) - now).total_seconds()))
        years = Decimal(seconds) / SECONDS_PER_YEAR
        return max(PricingParams.MIN_TIME_TO_EXPIRY, years)

    def minutes_to_expiry(self, expiry: date, reference: datetime | None = None) -> int:
        now = self._localize(reference)
        seconds = (self.expiry_datetime(expiry) - now).total_seconds()
        return max(0, int(seconds // 60))

    def trading_days_to_expiry(self, expiry: date, reference: datetime | date | None = None) -> int:
        days = 0
        current = self._as_date(reference)
        while current < expiry:
            current += timedelta(days=1)
            if self.is_trading_day(current):
                days += 1
        return days

    def _as_date(self, value: datetime | date | None) -> date:
        if isinstance(value, datetime) or value is None:
            return self._localize(value).date()
        return value
