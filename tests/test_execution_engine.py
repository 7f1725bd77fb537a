"""Tests for the execution engine: admission, margin reservations and the risk cycle."""

from datetime import date
from decimal import Decimal

import pytest

from nsepaper.app import build_context
from nsepaper.broker.models import OrderRequest
from nsepaper.config_loader import AppConfig, ExecutionConfig, LatencyConfig, PersistenceConfig
from nsepaper.constants import (
    FORCE_EXIT_TAG,
    ExitReason,
    InstrumentType,
    KillSwitchReason,
    OrderSide,
    OrderStatus,
    OrderType,
    StrategyStatus,
    StrategyType,
    Underlying,
)
from nsepaper.data.instruments import option_symbol
from nsepaper.data.market_data import InstrumentTick
from nsepaper.errors import StrategyError
from nsepaper.events import EventType
from nsepaper.persistence.state_store import PortfolioSnapshot
from nsepaper.time.clock import SimulatedClock

EXPIRY = date(2024, 1, 25)
ATM_CE = option_symbol(Underlying.NIFTY, EXPIRY, Decimal("24000"), InstrumentType.CE)


@pytest.fixture
def ctx():
    config = AppConfig(
        persistence=PersistenceConfig(enabled=False),
        execution=ExecutionConfig(latency=LatencyConfig(enabled=False)),
    )
    context = build_context(config, SimulatedClock())
    context.registry.build_chain(Underlying.NIFTY, [EXPIRY], Decimal("24000"), strikes_each_side=2)
    return context


async def push_market(ctx, bid="100.00", ask="100.10", spot="24000"):
    """Quote every option in the chain at the same bid/ask and tick the spot."""
    now = ctx.clock.now()
    spot_inst = ctx.registry.get_spot(Underlying.NIFTY)
    await ctx.engine.on_tick(
        InstrumentTick(
            token=spot_inst.token,
            symbol=spot_inst.symbol,
            underlying=Underlying.NIFTY,
            instrument_type=InstrumentType.SPOT,
            ltp=Decimal(spot),
            timestamp=now,
        )
    )
    for inst in ctx.registry.options(Underlying.NIFTY, EXPIRY):
        await ctx.engine.on_tick(
            InstrumentTick(
                token=inst.token,
                symbol=inst.symbol,
                underlying=inst.underlying,
                instrument_type=inst.instrument_type,
                ltp=(Decimal(bid) + Decimal(ask)) / 2,
                timestamp=now,
                bid=Decimal(bid),
                ask=Decimal(ask),
                bid_qty=5000,
                ask_qty=5000,
                strike=inst.strike,
                expiry=inst.expiry,
            )
        )


def request(side=OrderSide.BUY, qty=50, symbol=ATM_CE, **kwargs):
    return OrderRequest(symbol=symbol, side=side, quantity=qty, **kwargs)


class TestMarketData:
    @pytest.mark.asyncio
    async def test_spot_ticks_feed_the_tracker(self, ctx):
        await push_market(ctx, spot="24000")
        ctx.clock.advance(1)
        await push_market(ctx, spot="24010")
        assert ctx.market_state.get_spot_price(Underlying.NIFTY) == Decimal("24010")
        assert ctx.spot_tracker.get_velocity(Underlying.NIFTY) == Decimal("10")


class TestAdmission:
    @pytest.mark.asyncio
    async def test_market_buy_fills_and_opens_position(self, ctx):
        await push_market(ctx)
        order = await ctx.engine.submit_order(request())

        assert order.status == OrderStatus.FILLED
        assert order.avg_fill_price == Decimal("100.15")
        position = ctx.position_manager.get_position_by_symbol(ATM_CE)
        assert position is not None
        assert position.quantity == 50
        assert ctx.margin_tracker.reserved_for(order.id) == 0

    @pytest.mark.asyncio
    async def test_quantity_must_be_lot_multiple(self, ctx):
        await push_market(ctx)
        order = await ctx.engine.submit_order(request(qty=30))
        assert order.status == OrderStatus.REJECTED
        assert "lot size 25" in order.rejection_reason
        assert len(ctx.position_manager) == 0

    @pytest.mark.asyncio
    async def test_per_order_lot_limit(self, ctx):
        await push_market(ctx)
        order = await ctx.engine.submit_order(request(qty=25 * 51))
        assert order.status == OrderStatus.REJECTED
        assert "per-order limit" in order.rejection_reason

    @pytest.mark.asyncio
    async def test_insufficient_margin(self, ctx):
        await push_market(ctx)
        order = await ctx.engine.submit_order(request(side=OrderSide.SELL, qty=250))
        assert order.status == OrderStatus.REJECTED
        assert order.rejection_reason.startswith("Insufficient margin")

    @pytest.mark.asyncio
    async def test_position_limit(self, ctx):
        ctx.engine.risk_config = ctx.engine.risk_config.model_copy(update={"max_positions": 1})
        await push_market(ctx)
        await ctx.engine.submit_order(request(qty=25))

        other = option_symbol(Underlying.NIFTY, EXPIRY, Decimal("24050"), InstrumentType.CE)
        rejected = await ctx.engine.submit_order(request(qty=25, symbol=other))
        assert rejected.status == OrderStatus.REJECTED
        assert "Position limit" in rejected.rejection_reason

        # adding to an existing position is still allowed
        added = await ctx.engine.submit_order(request(qty=25))
        assert added.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_kill_switch_blocks_new_orders(self, ctx):
        await push_market(ctx)
        await ctx.kill_switch.manual_trigger("test")

        order = await ctx.engine.submit_order(request())
        assert order.status == OrderStatus.REJECTED
        assert order.rejection_reason == "Kill switch active: MANUAL"

        exit_order = await ctx.engine.submit_order(request(tag=FORCE_EXIT_TAG))
        assert exit_order.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_rejections_are_published(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request(qty=30))
        assert len(ctx.event_bus.history(EventType.ORDER_REJECTED)) == 1


class TestMarginEstimate:
    @pytest.mark.asyncio
    async def test_buy_needs_premium_at_ask(self, ctx):
        await push_market(ctx)
        assert ctx.engine.estimate_margin(request()) == Decimal("100.10") * 50

    @pytest.mark.asyncio
    async def test_closing_quantity_is_free(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request())
        assert ctx.engine.estimate_margin(request(side=OrderSide.SELL, qty=50)) == 0
        # only the 25 beyond the long position opens new short exposure
        assert ctx.engine.estimate_margin(request(side=OrderSide.SELL, qty=75)) > 0

    def test_unknown_symbol(self, ctx):
        assert ctx.engine.estimate_margin(request(symbol="UNKNOWN")) == 0


class TestReservations:
    @pytest.mark.asyncio
    async def test_resting_limit_holds_margin_until_cancelled(self, ctx):
        await push_market(ctx)
        order = await ctx.engine.submit_order(
            request(order_type=OrderType.LIMIT, limit_price=Decimal("99"))
        )
        assert order.status == OrderStatus.OPEN
        assert ctx.margin_tracker.reserved_for(order.id) == Decimal("4950")
        assert ctx.margin_tracker.available_margin == Decimal("500000") - Decimal("4950")

        assert ctx.engine.cancel_order(order.id)
        assert ctx.margin_tracker.reserved_for(order.id) == 0
        assert ctx.engine.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_reservation_released_when_limit_fills(self, ctx):
        await push_market(ctx)
        order = await ctx.engine.submit_order(
            request(order_type=OrderType.LIMIT, limit_price=Decimal("99"))
        )
        await push_market(ctx, bid="98.00", ask="98.10")
        report = await ctx.engine.run_cycle()

        assert report.swept == 1
        assert order.status == OrderStatus.FILLED
        assert ctx.margin_tracker.reserved_for(order.id) == 0


class TestRiskCycle:
    @pytest.mark.asyncio
    async def test_cycle_marks_positions(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request())
        await push_market(ctx, bid="110.00", ask="110.10")

        report = await ctx.engine.run_cycle()
        # marked at mid 110.05 against 100.15
        assert report.pnl == Decimal("9.90") * 50
        assert not report.kill_switch.triggered
        # long premium carries no margin
        assert report.margin.used_margin == 0

    @pytest.mark.asyncio
    async def test_loss_trips_kill_switch_and_flattens(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request(qty=1000))
        await push_market(ctx, bid="60.00", ask="60.10")

        report = await ctx.engine.run_cycle()

        assert report.kill_switch.triggered
        assert report.kill_switch.reason == KillSwitchReason.DAILY_LOSS_LIMIT
        assert len(ctx.position_manager) == 0
        # exit sold at bid less base slippage
        assert ctx.position_manager.get_aggregate_pnl().realized == (Decimal("59.95") - Decimal("100.15")) * 1000

        again = await ctx.engine.run_cycle()
        assert again.kill_switch.message == "Kill switch already active"

    @pytest.mark.asyncio
    async def test_force_exit_cancels_working_orders(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request(order_type=OrderType.LIMIT, limit_price=Decimal("90")))
        position_order = await ctx.engine.submit_order(request())
        assert position_order.status == OrderStatus.FILLED

        orders = await ctx.engine.force_exit(ctx.position_manager.get_all_positions())
        assert [o.status for o in orders] == [OrderStatus.FILLED]
        assert ctx.engine.get_pending_orders() == []
        assert len(ctx.position_manager) == 0


class TestStrategies:
    @pytest.mark.asyncio
    async def test_open_short_straddle(self, ctx):
        await push_market(ctx)
        strategy, orders = await ctx.engine.open_strategy(StrategyType.SHORT_STRADDLE, Underlying.NIFTY, EXPIRY)

        assert [o.status for o in orders] == [OrderStatus.FILLED, OrderStatus.FILLED]
        assert all(o.side == OrderSide.SELL for o in orders)
        assert len(strategy.position_ids) == 2
        assert sorted(strategy.order_ids) == sorted(o.id for o in orders)

    @pytest.mark.asyncio
    async def test_hedge_legs_submitted_first(self, ctx):
        await push_market(ctx)
        _, orders = await ctx.engine.open_strategy(StrategyType.IRON_CONDOR, Underlying.NIFTY, EXPIRY)

        assert [o.side for o in orders] == [OrderSide.BUY, OrderSide.BUY, OrderSide.SELL, OrderSide.SELL]
        assert all(o.status == OrderStatus.FILLED for o in orders)

    @pytest.mark.asyncio
    async def test_close_strategy(self, ctx):
        await push_market(ctx)
        strategy, _ = await ctx.engine.open_strategy(StrategyType.SHORT_STRADDLE, Underlying.NIFTY, EXPIRY)

        exits = await ctx.engine.close_strategy(strategy.id)
        assert len(exits) == 2
        assert strategy.status == StrategyStatus.CLOSED
        assert len(ctx.position_manager) == 0

    @pytest.mark.asyncio
    async def test_open_without_spot_raises(self, ctx):
        with pytest.raises(StrategyError):
            await ctx.engine.open_strategy(StrategyType.SHORT_STRADDLE, Underlying.NIFTY, EXPIRY)


class TestMonitoredStrategies:
    async def open_watched(self, ctx):
        await push_market(ctx)
        strategy, _ = await ctx.engine.open_strategy(StrategyType.SHORT_STRADDLE, Underlying.NIFTY, EXPIRY)
        ctx.monitor.watch(strategy.id, Decimal("500000"))
        return strategy

    def exit_orders(self, ctx, strategy):
        return [o for o in ctx.engine.fills.get_orders() if o.tag == f"{strategy.strategy_type.value}_EXIT"]

    @pytest.mark.asyncio
    async def test_cycle_takes_profit(self, ctx):
        strategy = await self.open_watched(ctx)
        # sold at 99.95, marked at 40.05: 2995 against a 2500 target
        await push_market(ctx, bid="40.00", ask="40.10")

        report = await ctx.engine.run_cycle()

        assert not report.kill_switch.triggered
        assert strategy.status == StrategyStatus.CLOSED
        assert len(ctx.position_manager) == 0
        assert not ctx.monitor.is_watching(strategy.id)
        exits = self.exit_orders(ctx, strategy)
        assert len(exits) == 2
        assert all(o.request.exit_reason == ExitReason.TARGET for o in exits)

    @pytest.mark.asyncio
    async def test_cycle_stops_out(self, ctx):
        strategy = await self.open_watched(ctx)
        await push_market(ctx, bid="200.00", ask="200.10")

        await ctx.engine.run_cycle()

        assert strategy.status == StrategyStatus.CLOSED
        assert all(o.request.exit_reason == ExitReason.STOP_LOSS for o in self.exit_orders(ctx, strategy))

    @pytest.mark.asyncio
    async def test_inside_band_stays_open(self, ctx):
        strategy = await self.open_watched(ctx)
        await push_market(ctx, bid="90.00", ask="90.10")

        await ctx.engine.run_cycle()

        assert strategy.status == StrategyStatus.ACTIVE
        assert ctx.monitor.is_watching(strategy.id)

    @pytest.mark.asyncio
    async def test_no_exits_while_kill_switch_active(self, ctx):
        strategy = await self.open_watched(ctx)
        await ctx.kill_switch.manual_trigger("halt")
        await push_market(ctx, bid="40.00", ask="40.10")

        await ctx.engine.run_cycle()

        assert strategy.status == StrategyStatus.ACTIVE
        assert self.exit_orders(ctx, strategy) == []
        assert ctx.monitor.is_watching(strategy.id)

    @pytest.mark.asyncio
    async def test_premium_strangle_is_watched(self, ctx):
        await push_market(ctx)
        strategy, orders = await ctx.engine.open_premium_strangle(Underlying.NIFTY)

        assert strategy.strategy_type == StrategyType.SHORT_STRANGLE
        # January listing is the only one, so the February rollover falls back to it
        assert strategy.expiry == EXPIRY
        assert [o.status for o in orders] == [OrderStatus.FILLED, OrderStatus.FILLED]
        assert all(o.side == OrderSide.SELL for o in orders)
        entry = ctx.monitor.get_watched()[0]
        assert entry.strategy_id == strategy.id
        assert entry.target == Decimal("2500")

    @pytest.mark.asyncio
    async def test_premium_strangle_without_prices(self, ctx):
        with pytest.raises(StrategyError):
            await ctx.engine.open_premium_strangle(Underlying.NIFTY)

    @pytest.mark.asyncio
    async def test_snapshot_carries_strategies(self, ctx):
        strategy = await self.open_watched(ctx)
        snapshot = ctx.engine.snapshot()
        assert [s.id for s in snapshot.strategies] == [strategy.id]

        restored = build_context(
            AppConfig(
                persistence=PersistenceConfig(enabled=False),
                execution=ExecutionConfig(latency=LatencyConfig(enabled=False)),
            ),
            SimulatedClock(),
        )
        restored.registry.build_chain(Underlying.NIFTY, [EXPIRY], Decimal("24000"), strikes_each_side=2)
        restored.engine.restore(PortfolioSnapshot.from_dict(snapshot.to_dict()))

        again = restored.strategies.require_strategy(strategy.id)
        assert sorted(again.position_ids) == sorted(strategy.position_ids)
        assert again.status == StrategyStatus.ACTIVE


class TestLifecycle:
    def test_restore_same_day_relatches_kill_switch(self, ctx):
        snapshot = PortfolioSnapshot(
            trading_date=date(2024, 1, 15),
            initial_capital=Decimal("500000"),
            realized_pnl=Decimal("-1000"),
            kill_switch_active=True,
            kill_switch_reason="DAILY_LOSS_LIMIT",
        )
        ctx.engine.restore(snapshot)

        assert ctx.margin_tracker.realized_pnl == Decimal("-1000")
        assert ctx.kill_switch.is_triggered
        assert ctx.kill_switch.state.reason == KillSwitchReason.DAILY_LOSS_LIMIT

    def test_restore_previous_day_starts_fresh(self, ctx):
        snapshot = PortfolioSnapshot(
            trading_date=date(2024, 1, 12),
            initial_capital=Decimal("500000"),
            realized_pnl=Decimal("2000"),
            kill_switch_active=True,
            kill_switch_reason="MANUAL",
        )
        ctx.engine.restore(snapshot)

        assert ctx.margin_tracker.initial_capital == Decimal("502000")
        assert ctx.margin_tracker.realized_pnl == 0
        assert not ctx.kill_switch.is_triggered
        assert ctx.position_manager.get_aggregate_pnl().realized == 0

    @pytest.mark.asyncio
    async def test_same_day_restore_keeps_realized_loss_in_cycle_pnl(self, ctx):
        ctx.engine.restore(
            PortfolioSnapshot(
                trading_date=date(2024, 1, 15),
                initial_capital=Decimal("500000"),
                realized_pnl=Decimal("-20000"),
            )
        )

        report = await ctx.engine.run_cycle()
        assert report.pnl == Decimal("-20000")
        assert not report.kill_switch.triggered
        assert ctx.engine.status()["realized_pnl"] == Decimal("-20000")

    @pytest.mark.asyncio
    async def test_same_day_restore_past_loss_limit_trips(self, ctx):
        ctx.engine.restore(
            PortfolioSnapshot(
                trading_date=date(2024, 1, 15),
                initial_capital=Decimal("500000"),
                realized_pnl=Decimal("-60000"),
            )
        )

        report = await ctx.engine.run_cycle()
        assert report.pnl == Decimal("-60000")
        assert report.kill_switch.triggered
        assert ctx.kill_switch.state.reason == KillSwitchReason.DAILY_LOSS_LIMIT

    @pytest.mark.asyncio
    async def test_snapshot_captures_book(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request())

        snapshot = ctx.engine.snapshot()
        assert snapshot.trading_date == date(2024, 1, 15)
        assert [p.symbol for p in snapshot.positions] == [ATM_CE]
        assert ctx.engine.save_snapshot() is False

    @pytest.mark.asyncio
    async def test_reset_daily(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request(order_type=OrderType.LIMIT, limit_price=Decimal("90")))
        await ctx.kill_switch.manual_trigger("test")

        ctx.engine.reset_daily()

        assert not ctx.kill_switch.is_triggered
        assert ctx.engine.get_pending_orders() == []
        assert len(ctx.event_bus.history(EventType.DAILY_RESET)) == 1

    @pytest.mark.asyncio
    async def test_status(self, ctx):
        await push_market(ctx)
        await ctx.engine.submit_order(request())

        status = ctx.engine.status()
        assert status["positions"] == 1
        assert status["trades"] == 1
        assert status["pending_orders"] == 0
        assert status["kill_switch"]["triggered"] is False
