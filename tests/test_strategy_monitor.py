"""Tests for the target / stop-loss strategy monitor."""

from datetime import date
from decimal import Decimal

import pytest

from nsepaper.config_loader import SessionConfig, StrategyConfig
from nsepaper.constants import ExitReason, StrategyStatus, StrategyType, Underlying
from nsepaper.data.instruments import InstrumentRegistry
from nsepaper.data.market_state import MarketState
from nsepaper.errors import PersistenceError, StrategyError
from nsepaper.events import EventBus
from nsepaper.position.position_manager import PositionManager
from nsepaper.position.strategy_aggregator import StrategyAggregator
from nsepaper.position.strategy_monitor import StrategyMonitor
from nsepaper.time.clock import SimulatedClock
from nsepaper.time.session_manager import SessionManager

EXPIRY = date(2024, 1, 25)
CAPITAL = Decimal("500000")


@pytest.fixture
def clock():
    return SimulatedClock()


@pytest.fixture
def aggregator(clock):
    bus = EventBus(now=clock.now)
    registry = InstrumentRegistry()
    registry.build_chain(Underlying.NIFTY, [EXPIRY], Decimal("24000"), strikes_each_side=2)
    positions = PositionManager(MarketState(clock), SessionManager(SessionConfig(), clock), bus, clock=clock)
    return StrategyAggregator(registry, positions, bus, clock)


@pytest.fixture
def strategy(aggregator):
    strategy, _ = aggregator.build(StrategyType.SHORT_STRANGLE, Underlying.NIFTY, EXPIRY, Decimal("24000"))
    return strategy


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "active-strategies.json"


@pytest.fixture
def monitor(aggregator, state_path, clock):
    return StrategyMonitor(aggregator, StrategyConfig(), state_path, clock)


class TestWatch:
    def test_thresholds_from_capital(self, monitor, strategy, clock):
        entry = monitor.watch(strategy.id, CAPITAL)

        assert entry.target == Decimal("2500")
        assert entry.stop_loss == Decimal("5000")
        assert entry.started_at == clock.now()
        assert monitor.is_watching(strategy.id)
        assert len(monitor) == 1

    def test_custom_percentages(self, aggregator, strategy):
        config = StrategyConfig(target_pct="0.01", stop_loss_pct="0.02")
        entry = StrategyMonitor(aggregator, config).watch(strategy.id, Decimal("200000"))

        assert entry.target == Decimal("2000")
        assert entry.stop_loss == Decimal("4000")

    def test_unknown_strategy(self, monitor):
        with pytest.raises(StrategyError):
            monitor.watch("stg_missing", CAPITAL)
        assert len(monitor) == 0

    def test_unwatch(self, monitor, strategy):
        monitor.watch(strategy.id, CAPITAL)

        assert monitor.unwatch(strategy.id) is True
        assert monitor.unwatch(strategy.id) is False
        assert monitor.get_watched() == []


class TestDueExits:
    def test_inside_band(self, monitor, strategy):
        monitor.watch(strategy.id, CAPITAL)
        strategy.unrealized_pnl = Decimal("2499")
        assert monitor.due_exits() == []

        strategy.unrealized_pnl = Decimal("-4999")
        assert monitor.due_exits() == []

    def test_target(self, monitor, strategy):
        monitor.watch(strategy.id, CAPITAL)
        strategy.realized_pnl = Decimal("1000")
        strategy.unrealized_pnl = Decimal("1500")

        assert monitor.due_exits() == [(strategy, ExitReason.TARGET)]
        # Still watched until the exit goes through.
        assert monitor.is_watching(strategy.id)

    def test_stop_loss(self, monitor, strategy):
        monitor.watch(strategy.id, CAPITAL)
        strategy.unrealized_pnl = Decimal("-5000")

        assert monitor.due_exits() == [(strategy, ExitReason.STOP_LOSS)]

    def test_closed_strategy_dropped(self, monitor, strategy):
        monitor.watch(strategy.id, CAPITAL)
        strategy.status = StrategyStatus.CLOSED
        strategy.unrealized_pnl = Decimal("-10000")

        assert monitor.due_exits() == []
        assert not monitor.is_watching(strategy.id)

    def test_forgotten_strategy_dropped(self, monitor, aggregator, strategy):
        monitor.watch(strategy.id, CAPITAL)
        aggregator.clear()

        assert monitor.due_exits() == []
        assert len(monitor) == 0


class TestPersistence:
    def test_reload(self, monitor, aggregator, strategy, state_path, clock):
        entry = monitor.watch(strategy.id, CAPITAL)
        assert state_path.exists()

        reloaded = StrategyMonitor(aggregator, StrategyConfig(), state_path, clock)
        assert reloaded.load() == 1
        assert reloaded.get_watched() == [entry]

    def test_unwatch_is_persisted(self, monitor, aggregator, strategy, state_path):
        monitor.watch(strategy.id, CAPITAL)
        monitor.unwatch(strategy.id)

        reloaded = StrategyMonitor(aggregator, state_path=state_path)
        assert reloaded.load() == 0

    def test_missing_file(self, monitor):
        assert monitor.load() == 0

    @pytest.mark.parametrize("content", ["{not json", '{"strategy_id": "x"}', '[{"capital": "1"}]'])
    def test_corrupt_file(self, monitor, state_path, content):
        state_path.parent.mkdir(parents=True)
        state_path.write_text(content, encoding="utf-8")

        with pytest.raises(PersistenceError, match="Corrupt monitor state"):
            monitor.load()

    def test_memory_only(self, aggregator, strategy, tmp_path):
        monitor = StrategyMonitor(aggregator)
        monitor.watch(strategy.id, CAPITAL)

        assert monitor.save() is False
        assert monitor.load() == 0
        assert list(tmp_path.iterdir()) == []
