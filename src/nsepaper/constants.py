"""Core constants for NSE paper trading."""

from decimal import Decimal
from enum import Enum


class Underlying(str, Enum):
    """Supported index underlyings."""

    NIFTY = "NIFTY"
    BANKNIFTY = "BANKNIFTY"
    FINNIFTY = "FINNIFTY"


class InstrumentType(str, Enum):
    """Instrument type of a tradable or reference instrument."""

    SPOT = "SPOT"
    FUT = "FUT"
    CE = "CE"
    PE = "PE"

    @property
    def is_option(self) -> bool:
        return self in (InstrumentType.CE, InstrumentType.PE)


class OrderType(str, Enum):
    """Order type for entries."""

    MARKET = "market"
    LIMIT = "limit"


class OrderSide(str, Enum):
    """Order side (buy/sell)."""

    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED}
)


class PositionSide(str, Enum):
    """Side of a net position."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1


class SpotDirection(str, Enum):
    """Direction of recent spot movement."""

    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


class VelocityCategory(str, Enum):
    """Bucketed absolute spot velocity."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class LatencyDistribution(str, Enum):
    """Random distribution used for simulated order latency."""

    UNIFORM = "uniform"
    NORMAL = "normal"
    EXPONENTIAL = "exponential"


class SpreadType(str, Enum):
    """Multi-leg structures recognised for margin relief."""

    NONE = "NONE"
    STRADDLE = "STRADDLE"
    STRANGLE = "STRANGLE"
    IRON_FLY = "IRON_FLY"
    IRON_CONDOR = "IRON_CONDOR"
    VERTICAL = "VERTICAL"


class KillSwitchReason(str, Enum):
    """Why the kill switch tripped."""

    DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
    MARGIN_BREACH = "MARGIN_BREACH"
    MANUAL = "MANUAL"
    ERROR = "ERROR"


class StrategyType(str, Enum):
    """Predefined multi-leg strategy templates."""

    SHORT_STRADDLE = "SHORT_STRADDLE"
    SHORT_STRANGLE = "SHORT_STRANGLE"
    IRON_FLY = "IRON_FLY"
    IRON_CONDOR = "IRON_CONDOR"
    BULL_CALL_SPREAD = "BULL_CALL_SPREAD"
    BEAR_PUT_SPREAD = "BEAR_PUT_SPREAD"
    CUSTOM = "CUSTOM"


class ExitReason(str, Enum):
    """Why a position or strategy was flattened."""

    TARGET = "TARGET"
    STOP_LOSS = "STOP_LOSS"
    KILL_SWITCH = "KILL_SWITCH"
    EXPIRY = "EXPIRY"
    MANUAL = "MANUAL"


class StrategyStatus(str, Enum):
    """Strategy lifecycle status."""

    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


# ============================================
# Contract Specifications
# ============================================


class ContractSpec:
    """Exchange contract specifications for index derivatives."""

    LOT_SIZES = {
        Underlying.NIFTY: 25,
        Underlying.BANKNIFTY: 15,
        Underlying.FINNIFTY: 25,
    }

    STRIKE_INTERVALS = {
        Underlying.NIFTY: Decimal("50"),
        Underlying.BANKNIFTY: Decimal("100"),
        Underlying.FINNIFTY: Decimal("50"),
    }

    SPOT_TOKENS = {
        Underlying.NIFTY: 256265,
        Underlying.BANKNIFTY: 260105,
        Underlying.FINNIFTY: 257801,
    }

    SPOT_SYMBOLS = {
        Underlying.NIFTY: "NIFTY 50",
        Underlying.BANKNIFTY: "NIFTY BANK",
        Underlying.FINNIFTY: "NIFTY FIN SERVICE",
    }

    TICK_SIZE = Decimal("0.05")


# ============================================
# Margin (SPAN approximation)
# ============================================


class MarginParams:
    """Percentages of notional used by the SPAN approximation."""

    ATM_SHORT = Decimal("0.18")
    NEAR_OTM_SHORT = Decimal("0.14")
    OTM_SHORT = Decimal("0.10")
    DEEP_OTM_SHORT = Decimal("0.07")
    EXPOSURE = Decimal("0.03")
    FUTURES_INITIAL = Decimal("0.12")
    FUTURES_EXPOSURE = Decimal("0.03")

    # |strike - spot| / spot boundaries between tiers
    ATM_THRESHOLD = Decimal("0.02")
    NEAR_OTM_THRESHOLD = Decimal("0.05")
    OTM_THRESHOLD = Decimal("0.10")

    BASELINE_IV = Decimal("15")
    IV_SURCHARGE_PER_POINT = Decimal("0.005")
    ITM_SURCHARGE_RATIO = Decimal("0.5")

    EXPIRY_DAY_MULTIPLIER = Decimal("1.5")
    DAY_BEFORE_MULTIPLIER = Decimal("1.25")
    NEAR_EXPIRY_MULTIPLIER = Decimal("1.10")
    FUTURES_NEAR_EXPIRY_MULTIPLIER = Decimal("1.1")

    DEFINED_RISK_BUFFER = Decimal("1.10")
    UNDEFINED_RISK_BENEFIT = Decimal("0.15")


# ============================================
# Slippage
# ============================================


class SlippageParams:
    """Slippage model coefficients."""

    BASE = Decimal("0.05")

    VELOCITY_LOW = Decimal("5")
    VELOCITY_MEDIUM = Decimal("15")
    VELOCITY_HIGH = Decimal("30")
    VELOCITY_EXTREME = Decimal("50")
    VELOCITY_SCALE = Decimal("0.50")

    WIDE_SPREAD_THRESHOLD = Decimal("0.02")
    SPREAD_FRACTION = Decimal("0.15")

    HIGH_IV_THRESHOLD = Decimal("25")
    IV_MULTIPLIER = Decimal("0.02")

    SIZE_MULTIPLIER = Decimal("0.10")
    SIZE_CAP_OF_MID = Decimal("0.02")
    MINUTES_PER_SESSION = 300

    DEPTH_MULTIPLIER = Decimal("0.50")
    DEPTH_LEVELS = 3

    EXPIRY_DAY_MULTIPLIER = Decimal("2")
    DAY_BEFORE_MULTIPLIER = Decimal("1.5")

    RESIDUAL_PENALTY = Decimal("0.005")


# ============================================
# Pricing
# ============================================


class PricingParams:
    """Black-Scholes and implied volatility defaults."""

    RISK_FREE_RATE = Decimal("0.065")
    IV_MIN = Decimal("0.05")
    IV_MAX = Decimal("1.50")
    IV_INITIAL_GUESS = Decimal("0.20")
    IV_NEWTON_ITERATIONS = 100
    IV_NEWTON_PRECISION = Decimal("0.0001")
    IV_BISECTION_ITERATIONS = 100
    MIN_VEGA = Decimal("0.00001")

    IV_INFLATION_BASE = Decimal("1.0")
    IV_INFLATION_MEDIUM = Decimal("1.15")
    IV_INFLATION_HIGH = Decimal("1.30")
    IV_INFLATION_EXTREME = Decimal("1.50")

    DAYS_IN_YEAR = Decimal("365")
    TRADING_DAYS_IN_YEAR = Decimal("252")
    MIN_TIME_TO_EXPIRY = Decimal("0.0001")

    DEFAULT_IV_PERCENT = Decimal("20")


# ============================================
# Default Values
# ============================================

DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_MARKET_OPEN = "09:15"
DEFAULT_MARKET_CLOSE = "15:30"
DEFAULT_EXPIRY_TIME = "15:30"
DEFAULT_WEEKLY_EXPIRY_WEEKDAY = 3  # Thursday

DEFAULT_INITIAL_CAPITAL = Decimal("500000")
DEFAULT_MAX_DAILY_LOSS = Decimal("50000")
DEFAULT_MAX_DAILY_LOSS_PCT = Decimal("0.05")
DEFAULT_MARGIN_BREACH_THRESHOLD = Decimal("0.90")
DEFAULT_MARGIN_WARNING_THRESHOLD = Decimal("0.75")
DEFAULT_PNL_WARNING_THRESHOLD = Decimal("0.03")
DEFAULT_MAX_LOTS_PER_ORDER = 50
DEFAULT_MAX_OPEN_ORDERS = 100
DEFAULT_MAX_POSITIONS = 50

DEFAULT_LATENCY_MIN_MS = 100
DEFAULT_LATENCY_MAX_MS = 500
DEFAULT_HIGH_VOL_EXTRA_MS = 200

DEFAULT_SWEEP_INTERVAL_MS = 1000
DEFAULT_PENDING_TIMEOUT_MS = 60000
DEFAULT_STALE_THRESHOLD_MS = 30000

DEFAULT_TARGET_PCT = Decimal("0.005")
DEFAULT_STOP_LOSS_PCT = Decimal("0.01")
DEFAULT_PREMIUM_CAPITAL_PCT = Decimal("0.03")
DEFAULT_ROLLOVER_DAY = 15

FORCE_EXIT_TAG = "KILL_SWITCH_EXIT"

# ============================================
# Application Constants
# ============================================

APP_NAME = "nsepaper"
PORTFOLIO_FILE_NAME = "portfolio.json"
MONITOR_FILE_NAME = "active-strategies.json"
JOURNAL_FILE_NAME = "trade_journal.db"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
