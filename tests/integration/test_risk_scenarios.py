"""Integration test: Risk scenario tests."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from nsepaper.app import build_chains, build_context
from nsepaper.broker.models import OrderRequest
from nsepaper.config_loader import (
    AppConfig,
    EnvironmentConfig,
    ExecutionConfig,
    FeedConfig,
    LatencyConfig,
    PersistenceConfig,
    RiskConfig,
)
from nsepaper.constants import (
    InstrumentType,
    KillSwitchReason,
    OrderSide,
    OrderStatus,
    OrderType,
    StrategyType,
    Underlying,
)
from nsepaper.data.instruments import futures_symbol, option_symbol
from nsepaper.data.market_data import InstrumentTick
from nsepaper.events import EventType
from nsepaper.execution.fill_engine import TIMEOUT_REASON
from nsepaper.time.clock import SimulatedClock

EXPIRY = date(2024, 1, 25)
ATM_CE = option_symbol(Underlying.NIFTY, EXPIRY, Decimal("24000"), InstrumentType.CE)
FUTURE = futures_symbol(Underlying.NIFTY, EXPIRY)


def make_config(tmp_path=None, **risk):
    return AppConfig(
        environment=EnvironmentConfig(data_dir=str(tmp_path or ".")),
        execution=ExecutionConfig(latency=LatencyConfig(enabled=False)),
        persistence=PersistenceConfig(enabled=tmp_path is not None),
        risk=RiskConfig(**risk),
        feed=FeedConfig(seed=42),
    )


def make_context(config, clock=None):
    ctx = build_context(config, clock or SimulatedClock())
    ctx.registry.build_chain(Underlying.NIFTY, [EXPIRY], Decimal("24000"), strikes_each_side=2, futures_expiry=EXPIRY)
    return ctx


async def quote(ctx, bid="100.00", ask="100.10", spot="24000"):
    """Tick the spot and quote the 24000 CE and the near future."""
    now = ctx.clock.now()
    spot_inst = ctx.registry.get_spot(Underlying.NIFTY)
    option = ctx.registry.get_by_symbol(ATM_CE)
    future = ctx.registry.get_by_symbol(FUTURE)
    await ctx.engine.on_tick(
        InstrumentTick(spot_inst.token, spot_inst.symbol, Underlying.NIFTY, InstrumentType.SPOT, Decimal(spot), now)
    )
    await ctx.engine.on_tick(
        InstrumentTick(
            token=option.token,
            symbol=option.symbol,
            underlying=Underlying.NIFTY,
            instrument_type=InstrumentType.CE,
            ltp=(Decimal(bid) + Decimal(ask)) / 2,
            timestamp=now,
            bid=Decimal(bid),
            ask=Decimal(ask),
            bid_qty=5000,
            ask_qty=5000,
            strike=option.strike,
            expiry=EXPIRY,
        )
    )
    await ctx.engine.on_tick(
        InstrumentTick(
            token=future.token,
            symbol=future.symbol,
            underlying=Underlying.NIFTY,
            instrument_type=InstrumentType.FUT,
            ltp=Decimal(spot),
            timestamp=now,
            bid=Decimal(spot),
            ask=Decimal(spot) + Decimal("0.10"),
            bid_qty=5000,
            ask_qty=5000,
            expiry=EXPIRY,
        )
    )


class TestDailyLossLimit:
    """Test daily loss limit triggers kill switch."""

    @pytest.mark.asyncio
    async def test_daily_loss_triggers_kill_switch(self):
        """A marked loss beyond the limit trips the switch and flattens the book."""
        ctx = make_context(make_config(max_daily_loss=Decimal("20000")))
        await quote(ctx)
        await ctx.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 500))

        await quote(ctx, bid="50.00", ask="50.10")
        report = await ctx.engine.run_cycle()

        assert report.kill_switch.triggered
        assert report.kill_switch.reason == KillSwitchReason.DAILY_LOSS_LIMIT
        assert len(ctx.position_manager) == 0
        assert len(ctx.event_bus.history(EventType.KILL_SWITCH_TRIGGERED)) == 1

        blocked = await ctx.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 25))
        assert blocked.status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_near_limit_still_allows_trading(self):
        """Trading allowed when near but not over limit."""
        ctx = make_context(make_config(max_daily_loss=Decimal("20000")))
        await quote(ctx)
        await ctx.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 500))

        # loss of 15,050 marked at mid
        await quote(ctx, bid="70.00", ask="70.10")
        report = await ctx.engine.run_cycle()

        assert not report.kill_switch.triggered
        order = await ctx.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 25))
        assert order.status == OrderStatus.FILLED


class TestMarginBreach:
    """Test margin utilization limit."""

    @pytest.mark.asyncio
    async def test_utilization_over_threshold_forces_exit(self):
        """Futures margin of 90,000 against 95,000 capital is over 90% utilization."""
        ctx = make_context(make_config(initial_capital=Decimal("95000")))
        await quote(ctx)
        order = await ctx.engine.submit_order(OrderRequest(FUTURE, OrderSide.BUY, 25))
        assert order.status == OrderStatus.FILLED

        report = await ctx.engine.run_cycle()

        assert report.kill_switch.reason == KillSwitchReason.MARGIN_BREACH
        assert report.margin.utilization > Decimal("0.90")
        assert len(ctx.event_bus.history(EventType.MARGIN_BREACH)) == 1
        assert len(ctx.position_manager) == 0


class TestOrderTimeout:
    """Resting limit orders expire after the pending timeout."""

    @pytest.mark.asyncio
    async def test_unfilled_limit_cancelled_and_margin_released(self):
        ctx = make_context(make_config())
        await quote(ctx)
        order = await ctx.engine.submit_order(
            OrderRequest(ATM_CE, OrderSide.BUY, 50, OrderType.LIMIT, Decimal("80"))
        )
        assert ctx.margin_tracker.reserved_for(order.id) == Decimal("4000")

        ctx.clock.advance(30)
        await quote(ctx)
        await ctx.engine.run_cycle()
        assert order.status == OrderStatus.OPEN

        ctx.clock.advance(30)
        await quote(ctx)
        await ctx.engine.run_cycle()

        assert order.status == OrderStatus.CANCELLED
        cancelled = ctx.event_bus.history(EventType.ORDER_CANCELLED)
        assert cancelled[-1].payload["reason"] == TIMEOUT_REASON
        assert ctx.margin_tracker.reserved_for(order.id) == 0


class TestExpiryDay:
    """Expiry-day fills pay double slippage."""

    @pytest.mark.asyncio
    async def test_expiry_day_slippage_doubles(self):
        normal = make_context(make_config())
        await quote(normal)
        normal_order = await normal.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 25))

        expiry_clock = SimulatedClock(datetime(2024, 1, 25, 10, 0))
        expiring = make_context(make_config(), expiry_clock)
        await quote(expiring)
        expiry_order = await expiring.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 25))

        normal_slip = normal_order.fills[0].slippage
        assert expiry_order.fills[0].slippage == normal_slip * 2
        assert expiry_order.avg_fill_price == Decimal("100.20")


class TestPositionPersistence:
    """Test state persistence across restarts."""

    @pytest.mark.asyncio
    async def test_book_survives_restart(self, tmp_path):
        """Positions and realized P&L come back on the same day."""
        clock = SimulatedClock()
        ctx = make_context(make_config(tmp_path), clock)
        await quote(ctx)
        await ctx.engine.submit_order(OrderRequest(ATM_CE, OrderSide.BUY, 100))
        await ctx.engine.submit_order(OrderRequest(ATM_CE, OrderSide.SELL, 50))
        realized = ctx.margin_tracker.realized_pnl

        restarted = make_context(make_config(tmp_path), clock)
        snapshot = restarted.state_store.load()
        assert snapshot is not None
        restarted.engine.restore(snapshot)

        position = restarted.position_manager.get_position_by_symbol(ATM_CE)
        assert position is not None
        assert position.quantity == 50
        assert restarted.margin_tracker.realized_pnl == realized

    @pytest.mark.asyncio
    async def test_kill_switch_persists(self, tmp_path):
        """A trip recorded by the force-exit fills is restored after restart."""
        clock = SimulatedClock()
        ctx = make_context(make_config(tmp_path, initial_capital=Decimal("95000")), clock)
        await quote(ctx)
        await ctx.engine.submit_order(OrderRequest(FUTURE, OrderSide.BUY, 25))
        await ctx.engine.run_cycle()
        assert ctx.kill_switch.is_triggered

        restarted = make_context(make_config(tmp_path, initial_capital=Decimal("95000")), clock)
        restarted.engine.restore(restarted.state_store.load())

        assert restarted.kill_switch.is_triggered
        assert restarted.kill_switch.state.reason == KillSwitchReason.MARGIN_BREACH

    @pytest.mark.asyncio
    async def test_next_day_starts_clean(self, tmp_path):
        clock = SimulatedClock()
        ctx = make_context(make_config(tmp_path, initial_capital=Decimal("95000")), clock)
        await quote(ctx)
        await ctx.engine.submit_order(OrderRequest(FUTURE, OrderSide.BUY, 25))
        await ctx.engine.run_cycle()
        realized = ctx.margin_tracker.realized_pnl

        clock.advance(24 * 3600)
        restarted = make_context(make_config(tmp_path, initial_capital=Decimal("95000")), clock)
        restarted.engine.restore(restarted.state_store.load())

        assert not restarted.kill_switch.is_triggered
        assert restarted.margin_tracker.initial_capital == Decimal("95000") + realized


class TestSimulatedSession:
    """End to end on the synthetic feed."""

    @pytest.mark.asyncio
    async def test_straddle_runs_through_cycles(self):
        config = make_config()
        clock = SimulatedClock()
        ctx = build_context(config, clock)
        await ctx.feed.subscribe(build_chains(ctx))
        await ctx.feed.connect()
        await ctx.feed.step()

        expiry = ctx.session.next_expiries(1)[0]
        strategy, orders = await ctx.engine.open_strategy(StrategyType.SHORT_STRADDLE, Underlying.NIFTY, expiry)
        assert [o.status for o in orders] == [OrderStatus.FILLED, OrderStatus.FILLED]

        for _ in range(10):
            clock.advance(1)
            await ctx.feed.step()
            report = await ctx.engine.run_cycle()
            assert not report.kill_switch.triggered

        status = ctx.engine.status()
        assert status["positions"] == 2
        assert status["used_margin"] > 0
        assert status["net_theta"] > 0
        assert strategy.total_pnl == status["unrealized_pnl"] + status["realized_pnl"]
