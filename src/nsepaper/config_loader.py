"""Configuration loader with Pydantic validation and environment variable interpolation."""

from __future__ import annotations

import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables at module level
load_dotenv(find_dotenv(usecwd=True))

from nsepaper.constants import (  # noqa: E402
    DEFAULT_HIGH_VOL_EXTRA_MS,
    DEFAULT_INITIAL_CAPITAL,
    DEFAULT_LATENCY_MAX_MS,
    DEFAULT_LATENCY_MIN_MS,
    DEFAULT_MARGIN_BREACH_THRESHOLD,
    DEFAULT_MARGIN_WARNING_THRESHOLD,
    DEFAULT_MAX_DAILY_LOSS,
    DEFAULT_MAX_DAILY_LOSS_PCT,
    DEFAULT_MAX_LOTS_PER_ORDER,
    DEFAULT_MAX_OPEN_ORDERS,
    DEFAULT_MAX_POSITIONS,
    DEFAULT_PENDING_TIMEOUT_MS,
    DEFAULT_PNL_WARNING_THRESHOLD,
    DEFAULT_PREMIUM_CAPITAL_PCT,
    DEFAULT_ROLLOVER_DAY,
    DEFAULT_STALE_THRESHOLD_MS,
    DEFAULT_STOP_LOSS_PCT,
    DEFAULT_SWEEP_INTERVAL_MS,
    DEFAULT_TARGET_PCT,
    JOURNAL_FILE_NAME,
    MONITOR_FILE_NAME,
    PORTFOLIO_FILE_NAME,
    ContractSpec,
    LatencyDistribution,
    LogLevel,
    MarginParams,
    PricingParams,
    SlippageParams,
    Underlying,
)


def interpolate_env_vars(value: Any) -> Any:
    """
    Interpolate environment variables in string values.

    Supports formats:
    - ${VAR_NAME} - replaced with the variable, or empty when unset
    - ${VAR_NAME:default} - optional with default value
    """
    if not isinstance(value, str):
        return value

    pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        return match.group(2) or ""

    return re.sub(pattern, replacer, value)


def process_config_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively process config dict to interpolate env vars."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = process_config_dict(value)
        elif isinstance(value, list):
            result[key] = [
                process_config_dict(item) if isinstance(item, dict) else interpolate_env_vars(item)
                for item in value
            ]
        else:
            result[key] = interpolate_env_vars(value)
    return result


def _to_decimal(v: Any) -> Decimal:
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def _validate_hhmm(v: str) -> str:
    if not re.match(r"^\d{2}:\d{2}$", v):
        raise ValueError(f"Time must be in HH:MM format, got: {v}")
    hours, minutes = map(int, v.split(":"))
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid time value: {v}")
    return v


# ============================================
# Pydantic Configuration Models
# ============================================


class EnvironmentConfig(BaseModel):
    """Environment and runtime settings."""

    log_level: LogLevel = LogLevel.INFO
    data_dir: str = "./data"


class UnderlyingSpecConfig(BaseModel):
    """Per-underlying contract overrides."""

    lot_size: int
    strike_interval: Decimal
    tick_size: Decimal = ContractSpec.TICK_SIZE

    @field_validator("strike_interval", "tick_size", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return _to_decimal(v)

    @field_validator("lot_size")
    @classmethod
    def validate_lot_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Lot size must be positive, got: {v}")
        return v


def _default_specs() -> dict[Underlying, UnderlyingSpecConfig]:
    return {
        u: UnderlyingSpecConfig(
            lot_size=ContractSpec.LOT_SIZES[u],
            strike_interval=ContractSpec.STRIKE_INTERVALS[u],
        )
        for u in Underlying
    }


class InstrumentsConfig(BaseModel):
    """Underlyings and option chain shape."""

    underlyings: list[Underlying] = Field(default_factory=lambda: [Underlying.NIFTY])
    strikes_around_atm: int = 10
    expiry_count: int = 2
    specs: dict[Underlying, UnderlyingSpecConfig] = Field(default_factory=_default_specs)

    @model_validator(mode="after")
    def fill_missing_specs(self) -> InstrumentsConfig:
        """Ensure every known underlying has a contract spec."""
        defaults = _default_specs()
        for underlying, spec in defaults.items():
            self.specs.setdefault(underlying, spec)
        return self

    def lot_size(self, underlying: Underlying) -> int:
        return self.specs[underlying].lot_size

    def strike_interval(self, underlying: Underlying) -> Decimal:
        return self.specs[underlying].strike_interval

    def tick_size(self, underlying: Underlying) -> Decimal:
        return self.specs[underlying].tick_size


class SessionConfig(BaseModel):
    """NSE trading session configuration."""

    timezone: str = "Asia/Kolkata"
    market_open: str = "09:15"
    market_close: str = "15:30"
    pre_open_start: str = "09:00"
    pre_open_end: str = "09:08"
    expiry_time: str = "15:30"
    weekly_expiry_weekday: int = 3
    trading_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    holidays: list[str] = Field(default_factory=list)

    @field_validator("market_open", "market_close", "pre_open_start", "pre_open_end", "expiry_time")
    @classmethod
    def validate_time_format(cls, v: str) -> str:
        """Validate time is in HH:MM format."""
        return _validate_hhmm(v)

    @field_validator("trading_days")
    @classmethod
    def validate_trading_days(cls, v: list[int]) -> list[int]:
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"Trading day must be 0-6, got: {day}")
        return v

    @field_validator("weekly_expiry_weekday")
    @classmethod
    def validate_weekday(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError(f"Expiry weekday must be 0-6, got: {v}")
        return v


class LatencyConfig(BaseModel):
    """Simulated order latency."""

    enabled: bool = True
    min_ms: int = DEFAULT_LATENCY_MIN_MS
    max_ms: int = DEFAULT_LATENCY_MAX_MS
    distribution: LatencyDistribution = LatencyDistribution.NORMAL
    high_volatility_extra_ms: int = DEFAULT_HIGH_VOL_EXTRA_MS
    tracker_size: int = 10000

    @model_validator(mode="after")
    def validate_range(self) -> LatencyConfig:
        if self.min_ms < 0 or self.max_ms < self.min_ms:
            raise ValueError(
                f"Latency range invalid: min_ms={self.min_ms}, max_ms={self.max_ms}"
            )
        return self


class SlippageConfig(BaseModel):
    """Slippage model coefficients."""

    enabled: bool = True
    base: Decimal = SlippageParams.BASE
    spread_fraction: Decimal = SlippageParams.SPREAD_FRACTION
    wide_spread_threshold: Decimal = SlippageParams.WIDE_SPREAD_THRESHOLD
    velocity_scale: Decimal = SlippageParams.VELOCITY_SCALE
    high_iv_threshold: Decimal = SlippageParams.HIGH_IV_THRESHOLD
    iv_multiplier: Decimal = SlippageParams.IV_MULTIPLIER
    size_multiplier: Decimal = SlippageParams.SIZE_MULTIPLIER
    depth_multiplier: Decimal = SlippageParams.DEPTH_MULTIPLIER
    expiry_day_multiplier: Decimal = SlippageParams.EXPIRY_DAY_MULTIPLIER
    day_before_multiplier: Decimal = SlippageParams.DAY_BEFORE_MULTIPLIER

    @field_validator(
        "base",
        "spread_fraction",
        "wide_spread_threshold",
        "velocity_scale",
        "high_iv_threshold",
        "iv_multiplier",
        "size_multiplier",
        "depth_multiplier",
        "expiry_day_multiplier",
        "day_before_multiplier",
        mode="before",
    )
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return _to_decimal(v)


class ExecutionConfig(BaseModel):
    """Execution settings configuration."""

    latency: LatencyConfig = Field(default_factory=LatencyConfig)
    slippage: SlippageConfig = Field(default_factory=SlippageConfig)
    sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS
    pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS
    stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS

    @field_validator("sweep_interval_ms", "pending_timeout_ms", "stale_threshold_ms")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Interval must be positive, got: {v}")
        return v


class PricingConfig(BaseModel):
    """Black-Scholes and IV solver settings."""

    risk_free_rate: Decimal = PricingParams.RISK_FREE_RATE
    iv_min: Decimal = PricingParams.IV_MIN
    iv_max: Decimal = PricingParams.IV_MAX
    iv_initial_guess: Decimal = PricingParams.IV_INITIAL_GUESS
    iv_max_iterations: int = PricingParams.IV_NEWTON_ITERATIONS
    iv_precision: Decimal = PricingParams.IV_NEWTON_PRECISION

    @field_validator(
        "risk_free_rate", "iv_min", "iv_max", "iv_initial_guess", "iv_precision", mode="before"
    )
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return _to_decimal(v)

    @model_validator(mode="after")
    def validate_iv_bounds(self) -> PricingConfig:
        if not (0 < self.iv_min < self.iv_max):
            raise ValueError(f"IV bounds invalid: iv_min={self.iv_min}, iv_max={self.iv_max}")
        return self


class MarginConfig(BaseModel):
    """SPAN approximation tiers."""

    atm_short_pct: Decimal = MarginParams.ATM_SHORT
    near_otm_short_pct: Decimal = MarginParams.NEAR_OTM_SHORT
    otm_short_pct: Decimal = MarginParams.OTM_SHORT
    deep_otm_short_pct: Decimal = MarginParams.DEEP_OTM_SHORT
    exposure_pct: Decimal = MarginParams.EXPOSURE
    futures_initial_pct: Decimal = MarginParams.FUTURES_INITIAL
    futures_exposure_pct: Decimal = MarginParams.FUTURES_EXPOSURE
    atm_threshold: Decimal = MarginParams.ATM_THRESHOLD
    near_otm_threshold: Decimal = MarginParams.NEAR_OTM_THRESHOLD
    otm_threshold: Decimal = MarginParams.OTM_THRESHOLD

    @field_validator(
        "atm_short_pct",
        "near_otm_short_pct",
        "otm_short_pct",
        "deep_otm_short_pct",
        "exposure_pct",
        "futures_initial_pct",
        "futures_exposure_pct",
        "atm_threshold",
        "near_otm_threshold",
        "otm_threshold",
        mode="before",
    )
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return _to_decimal(v)


class RiskConfig(BaseModel):
    """Risk management configuration."""

    initial_capital: Decimal = DEFAULT_INITIAL_CAPITAL
    max_daily_loss: Decimal = DEFAULT_MAX_DAILY_LOSS
    max_daily_loss_pct: Decimal = DEFAULT_MAX_DAILY_LOSS_PCT
    margin_breach_threshold: Decimal = DEFAULT_MARGIN_BREACH_THRESHOLD
    margin_warning_threshold: Decimal = DEFAULT_MARGIN_WARNING_THRESHOLD
    pnl_warning_threshold: Decimal = DEFAULT_PNL_WARNING_THRESHOLD
    force_exit_on_breach: bool = True
    max_lots_per_order: int = DEFAULT_MAX_LOTS_PER_ORDER
    max_open_orders: int = DEFAULT_MAX_OPEN_ORDERS
    max_positions: int = DEFAULT_MAX_POSITIONS

    @field_validator(
        "initial_capital",
        "max_daily_loss",
        "max_daily_loss_pct",
        "margin_breach_threshold",
        "margin_warning_threshold",
        "pnl_warning_threshold",
        mode="before",
    )
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        """Convert numeric values to Decimal."""
        return _to_decimal(v)

    @field_validator("max_lots_per_order", "max_open_orders", "max_positions")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> RiskConfig:
        if self.initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got: {self.initial_capital}")
        if self.margin_warning_threshold > self.margin_breach_threshold:
            raise ValueError(
                f"margin_warning_threshold ({self.margin_warning_threshold}) must not exceed "
                f"margin_breach_threshold ({self.margin_breach_threshold})"
            )
        return self


class PersistenceConfig(BaseModel):
    """Portfolio snapshot settings."""

    enabled: bool = True
    file_name: str = PORTFOLIO_FILE_NAME
    save_on_fill: bool = True


class StrategyConfig(BaseModel):
    """Strategy automation: target/stop-loss monitoring and premium-targeted strangles."""

    monitor_enabled: bool = True
    target_pct: Decimal = DEFAULT_TARGET_PCT
    stop_loss_pct: Decimal = DEFAULT_STOP_LOSS_PCT
    state_file: str = MONITOR_FILE_NAME
    premium_capital_pct: Decimal = DEFAULT_PREMIUM_CAPITAL_PCT
    rollover_day: int = DEFAULT_ROLLOVER_DAY

    @field_validator("target_pct", "stop_loss_pct", "premium_capital_pct", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return _to_decimal(v)

    @field_validator("target_pct", "stop_loss_pct", "premium_capital_pct")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError(f"Percentage must be positive, got: {v}")
        return v

    @field_validator("rollover_day")
    @classmethod
    def validate_day(cls, v: int) -> int:
        if not 1 <= v <= 31:
            raise ValueError(f"Rollover day must be 1-31, got: {v}")
        return v


class JournalConfig(BaseModel):
    """SQLite trade journal."""

    enabled: bool = True
    file_name: str = JOURNAL_FILE_NAME


class FeedConfig(BaseModel):
    """Simulated market data feed."""

    tick_interval_ms: int = 1000
    seed: int | None = None
    base_iv: Decimal = Decimal("0.15")
    annual_volatility: Decimal = Decimal("0.15")
    starting_spots: dict[Underlying, Decimal] = Field(
        default_factory=lambda: {
            Underlying.NIFTY: Decimal("24000"),
            Underlying.BANKNIFTY: Decimal("51000"),
            Underlying.FINNIFTY: Decimal("23500"),
        }
    )

    @field_validator("base_iv", "annual_volatility", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return _to_decimal(v)

    @field_validator("starting_spots", mode="before")
    @classmethod
    def convert_spots(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {key: _to_decimal(val) for key, val in v.items()}
        return v


class EventsConfig(BaseModel):
    """Event bus settings."""

    history_size: int = 1000


class AppConfig(BaseModel):
    """Root application configuration."""

    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    instruments: InstrumentsConfig = Field(default_factory=InstrumentsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    margin: MarginConfig = Field(default_factory=MarginConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    journal: JournalConfig = Field(default_factory=JournalConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)

    @property
    def snapshot_path(self) -> Path:
        """Full path of the portfolio snapshot file."""
        return Path(self.environment.data_dir) / self.persistence.file_name

    @property
    def monitor_state_path(self) -> Path:
        return Path(self.environment.data_dir) / self.strategy.state_file

    @property
    def journal_path(self) -> Path:
        return Path(self.environment.data_dir) / self.journal.file_name


# ============================================
# Configuration Loader
# ============================================


class ConfigLoader:
    """Load and validate configuration from YAML files with env var interpolation."""

    def __init__(self, config_path: str | Path) -> None:
        self.config_path = Path(config_path)
        self._config: AppConfig | None = None

    def load(self) -> AppConfig:
        """
        Load and validate configuration.

        Returns:
            Validated AppConfig instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            yaml.YAMLError: If YAML is invalid.
            pydantic.ValidationError: If config validation fails.
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if raw_config is None:
            raw_config = {}

        processed_config = process_config_dict(raw_config)
        self._config = AppConfig.model_validate(processed_config)
        return self._config

    @property
    def config(self) -> AppConfig:
        """Get loaded config, loading if necessary."""
        if self._config is None:
            return self.load()
        return self._config

    def reload(self) -> AppConfig:
        """Force reload configuration from disk."""
        self._config = None
        return self.load()


def load_config(config_path: str | Path) -> AppConfig:
    """Convenience function to load configuration."""
    return ConfigLoader(config_path).load()


def load_config_with_overrides(
    config_path: str | Path,
    *,
    log_level: str | None = None,
    initial_capital: str | Decimal | None = None,
    data_dir: str | None = None,
) -> AppConfig:
    """
    Load configuration with CLI overrides.

    Args:
        config_path: Path to the YAML configuration file.
        log_level: Override environment log level.
        initial_capital: Override starting capital.
        data_dir: Override the data directory.

    Returns:
        Validated AppConfig instance with overrides applied.
    """
    config = load_config(config_path)

    updates: dict[str, Any] = {}
    env_updates: dict[str, Any] = {}

    if log_level is not None:
        env_updates["log_level"] = LogLevel(log_level.upper())
    if data_dir is not None:
        env_updates["data_dir"] = data_dir
    if env_updates:
        updates["environment"] = config.environment.model_copy(update=env_updates)

    if initial_capital is not None:
        updates["risk"] = config.risk.model_copy(
            update={"initial_capital": _to_decimal(initial_capital)}
        )

    if updates:
        return config.model_copy(update=updates)
    return config
