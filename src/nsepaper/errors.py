"""Exception hierarchy for the paper trading core."""

from __future__ import annotations

from typing import Any


class TradingSystemError(Exception):
    """Base class for all trading system errors."""

    code = "TRADING_SYSTEM_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"[{self.code}] {self.message} {self.context}"
        return f"[{self.code}] {self.message}"


# ============================================
# Market Data
# ============================================


class MarketDataError(TradingSystemError):
    code = "MARKET_DATA_ERROR"


class InstrumentNotFoundError(MarketDataError):
    code = "INSTRUMENT_NOT_FOUND"

    def __init__(self, identifier: str | int, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"Instrument not found: {identifier}", context)
        self.identifier = identifier


class MarketDataStaleError(MarketDataError):
    code = "MARKET_DATA_STALE"


# ============================================
# Orders
# ============================================


class OrderError(TradingSystemError):
    code = "ORDER_ERROR"


class OrderValidationError(OrderError):
    code = "ORDER_VALIDATION_ERROR"


class OrderRejectedError(OrderError):
    code = "ORDER_REJECTED"


class OrderNotFoundError(OrderError):
    code = "ORDER_NOT_FOUND"


class InsufficientMarginError(OrderError):
    code = "INSUFFICIENT_MARGIN"

    def __init__(self, required: str, available: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"Insufficient margin. Required: {required}, Available: {available}", context)
        self.required = required
        self.available = available


# ============================================
# Positions / Strategies
# ============================================


class PositionError(TradingSystemError):
    code = "POSITION_ERROR"


class PositionNotFoundError(PositionError):
    code = "POSITION_NOT_FOUND"


class StrategyError(TradingSystemError):
    code = "STRATEGY_ERROR"


# ============================================
# Risk
# ============================================


class RiskError(TradingSystemError):
    code = "RISK_ERROR"


class KillSwitchActiveError(RiskError):
    code = "KILL_SWITCH_ACTIVE"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Kill switch active: {reason}", {"reason": reason})


# ============================================
# Pricing / Execution / Infrastructure
# ============================================


class PricingError(TradingSystemError):
    code = "PRICING_ERROR"


class IVCalculationError(PricingError):
    code = "IV_CALCULATION_ERROR"


class ExecutionError(TradingSystemError):
    code = "EXECUTION_ERROR"


class LatencyQueueStoppedError(ExecutionError):
    code = "LATENCY_QUEUE_STOPPED"


class PersistenceError(TradingSystemError):
    code = "PERSISTENCE_ERROR"


class JournalError(PersistenceError):
    code = "JOURNAL_ERROR"


class ConfigurationError(TradingSystemError):
    code = "CONFIGURATION_ERROR"
