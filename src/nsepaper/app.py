"""NSE Paper Trading Application."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path

from nsepaper.config_loader import AppConfig, load_config_with_overrides
from nsepaper.constants import APP_NAME, LOG_FORMAT
from nsepaper.data.instruments import InstrumentRegistry
from nsepaper.data.market_state import MarketState
from nsepaper.data.sim_feed import SimDataFeed
from nsepaper.data.spot_tracker import SpotTracker
from nsepaper.events import EventBus
from nsepaper.execution.engine import CycleReport, ExecutionEngine
from nsepaper.execution.fill_engine import FillEngine
from nsepaper.execution.latency import LatencySimulator
from nsepaper.journal.journaler import TradeJournal
from nsepaper.numeric import format_inr
from nsepaper.persistence.state_store import StateStore
from nsepaper.position.position_manager import PositionManager
from nsepaper.position.strategy_aggregator import StrategyAggregator
from nsepaper.position.strategy_monitor import StrategyMonitor
from nsepaper.risk.kill_switch import KillSwitch
from nsepaper.risk.margin_tracker import MarginTracker
from nsepaper.risk.span_margin import MarginCalculator
from nsepaper.time.clock import Clock, SystemClock, Ticker
from nsepaper.time.session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Every service of one simulation instance, explicitly wired."""

    config: AppConfig
    clock: Clock
    event_bus: EventBus
    session: SessionManager
    registry: InstrumentRegistry
    market_state: MarketState
    spot_tracker: SpotTracker
    fill_engine: FillEngine
    position_manager: PositionManager
    strategies: StrategyAggregator
    monitor: StrategyMonitor | None
    margin_tracker: MarginTracker
    kill_switch: KillSwitch
    state_store: StateStore | None
    engine: ExecutionEngine
    feed: SimDataFeed
    journal: TradeJournal | None


def build_context(config: AppConfig, clock: Clock | None = None) -> AppContext:
    """Construct and wire all services; nothing is started."""
    clock = clock or SystemClock(config.session.timezone)
    event_bus = EventBus(config.events.history_size, now=clock.now)
    session = SessionManager(config.session, clock)
    registry = InstrumentRegistry(config.instruments)
    market_state = MarketState(clock, event_bus, config.execution.stale_threshold_ms)
    spot_tracker = SpotTracker()

    fill_engine = FillEngine(
        market_state,
        spot_tracker,
        registry,
        session,
        event_bus,
        config.execution,
        clock,
        LatencySimulator(config.execution.latency),
    )
    position_manager = PositionManager(market_state, session, event_bus, config.pricing, clock)
    strategies = StrategyAggregator(registry, position_manager, event_bus, clock, market_state, config.strategy)
    margin_tracker = MarginTracker(config.risk.initial_capital, MarginCalculator(config.margin))
    kill_switch = KillSwitch(config.risk, event_bus, clock)
    state_store = StateStore(config.snapshot_path) if config.persistence.enabled else None
    monitor: StrategyMonitor | None = None
    if config.strategy.monitor_enabled:
        monitor_path = config.monitor_state_path if config.persistence.enabled else None
        monitor = StrategyMonitor(strategies, config.strategy, monitor_path, clock)
    journal = TradeJournal(config.journal_path, market_state, strategies, clock) if config.journal.enabled else None

    engine = ExecutionEngine(
        fill_engine,
        position_manager,
        margin_tracker,
        kill_switch,
        registry,
        market_state,
        spot_tracker,
        session,
        event_bus,
        risk_config=config.risk,
        strategies=strategies,
        state_store=state_store,
        save_on_fill=config.persistence.enabled and config.persistence.save_on_fill,
        clock=clock,
        monitor=monitor,
    )

    feed = SimDataFeed(registry, session, config.feed, config.pricing, clock, event_bus)
    feed.add_tick_callback(engine.on_tick)

    return AppContext(
        config=config,
        clock=clock,
        event_bus=event_bus,
        session=session,
        registry=registry,
        market_state=market_state,
        spot_tracker=spot_tracker,
        fill_engine=fill_engine,
        position_manager=position_manager,
        strategies=strategies,
        monitor=monitor,
        margin_tracker=margin_tracker,
        kill_switch=kill_switch,
        state_store=state_store,
        engine=engine,
        feed=feed,
        journal=journal,
    )


def build_chains(ctx: AppContext) -> list[int]:
    """Register option chains for every configured underlying; returns tokens to subscribe."""
    tokens: list[int] = []
    expiries = ctx.session.next_expiries(ctx.config.instruments.expiry_count)
    for underlying in ctx.config.instruments.underlyings:
        spot = ctx.feed.spots.get(underlying)
        if spot is None:
            logger.warning(f"No starting spot for {underlying.value}; skipping chain")
            continue
        tokens.append(ctx.registry.get_spot(underlying).token)
        tokens.extend(i.token for i in ctx.registry.build_chain(underlying, expiries, spot))
    return tokens


class PaperTradingApp:
    """Main application orchestrator."""

    def __init__(
        self,
        config_path: str = "config/config.yaml",
        log_level: str | None = None,
        initial_capital: str | None = None,
        data_dir: str | None = None,
    ):
        self.config_path = Path(config_path)
        self._overrides = {"log_level": log_level, "initial_capital": initial_capital, "data_dir": data_dir}
        self.config: AppConfig | None = None
        self.ctx: AppContext | None = None
        self.ticker: Ticker | None = None
        self._shutdown_event = asyncio.Event()

    def _setup_logging(self) -> None:
        level = self.config.environment.log_level.value if self.config else "INFO"
        logging.basicConfig(level=level, format=LOG_FORMAT)

    async def initialize(self) -> AppContext:
        """Load config, wire services, restore the last snapshot and build chains."""
        self.config = load_config_with_overrides(self.config_path.absolute(), **self._overrides)
        self._setup_logging()
        logger.info(f"Initializing {APP_NAME}...")

        self.ctx = build_context(self.config)

        if self.ctx.state_store is not None:
            snapshot = self.ctx.state_store.load()
            if snapshot is not None:
                self.ctx.engine.restore(snapshot)
        if self.ctx.monitor is not None:
            self.ctx.monitor.load()
        if self.ctx.journal is not None:
            await self.ctx.journal.initialize()
            await self.ctx.journal.start_run(self.config)
            self.ctx.journal.attach(self.ctx.event_bus)

        tokens = build_chains(self.ctx)
        await self.ctx.feed.subscribe(tokens)
        logger.info(
            f"Ready: {len(tokens)} instrument(s), capital {format_inr(self.ctx.margin_tracker.initial_capital)}"
        )
        return self.ctx

    async def _cycle(self) -> None:
        assert self.ctx is not None
        report: CycleReport = await self.ctx.engine.run_cycle()
        if report.kill_switch.triggered:
            logger.debug(f"Cycle with kill switch active: pnl {format_inr(report.pnl)}")

    async def run(self) -> None:
        """Run the feed and the periodic update cycle until signalled."""
        if self.ctx is None:
            await self.initialize()
        assert self.ctx is not None and self.config is not None
        ctx = self.ctx

        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._handle_signal)
        except NotImplementedError:
            logger.warning("Signal handlers not supported in this environment. Use Ctrl+C to stop.")

        await ctx.feed.connect()
        feed_task = asyncio.create_task(ctx.feed.start())
        self.ticker = Ticker(ctx.clock, self.config.execution.sweep_interval_ms / 1000, self._cycle, "update-cycle")
        self.ticker.start()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("Shutting down...")
            await self.ticker.stop()
            ctx.feed.stop()
            await ctx.feed.disconnect()
            feed_task.cancel()
            try:
                await feed_task
            except asyncio.CancelledError:
                pass
            ctx.fill_engine.cancel_all("shutdown")
            ctx.engine.save_snapshot()
            await self.close()
            logger.info("Shutdown complete.")

    async def close(self) -> None:
        """Flush pending event handlers and close the journal."""
        if self.ctx is None:
            return
        await self.ctx.event_bus.drain()
        if self.ctx.journal is not None:
            await self.ctx.journal.close()

    def _handle_signal(self) -> None:
        logger.info("Signal received, initiating shutdown...")
        self._shutdown_event.set()

    def shutdown(self) -> None:
        self._shutdown_event.set()
