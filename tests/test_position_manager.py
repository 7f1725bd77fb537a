"""Tests for the position ledger."""

from datetime import date
from decimal import Decimal

import pytest

from nsepaper.broker.models import Fill, Order, OrderRequest, generate_id
from nsepaper.config_loader import SessionConfig
from nsepaper.constants import InstrumentType, OrderSide, OrderStatus, PositionSide, Underlying
from nsepaper.data.market_data import InstrumentTick
from nsepaper.data.market_state import MarketState
from nsepaper.errors import PositionError, PositionNotFoundError
from nsepaper.events import EventBus, EventType
from nsepaper.position.position_manager import PositionManager
from nsepaper.time.clock import SimulatedClock
from nsepaper.time.session_manager import SessionManager

EXPIRY = date(2024, 1, 25)
SYMBOL = "NIFTY24JAN2524000CE"
TOKEN = 10000010


@pytest.fixture
def clock():
    return SimulatedClock()


@pytest.fixture
def bus(clock):
    return EventBus(now=clock.now)


@pytest.fixture
def market_state(clock):
    return MarketState(clock)


@pytest.fixture
def manager(market_state, clock, bus):
    return PositionManager(market_state, SessionManager(SessionConfig(), clock), bus, clock=clock)


def filled(clock, side, qty, price, symbol=SYMBOL, token=TOKEN, status=OrderStatus.FILLED, strategy_id=None):
    now = clock.now()
    order = Order(
        id=generate_id("ord_"),
        request=OrderRequest(symbol=symbol, side=side, quantity=qty, strategy_id=strategy_id),
        token=token,
        underlying=Underlying.NIFTY,
        instrument_type=InstrumentType.CE,
        created_at=now,
        updated_at=now,
        strike=Decimal("24000"),
        expiry=EXPIRY,
        status=status,
        filled_qty=qty if status == OrderStatus.FILLED else 0,
        avg_fill_price=Decimal(price),
    )
    return order


def tick(clock, bid, ask, token=TOKEN, symbol=SYMBOL, itype=InstrumentType.CE):
    return InstrumentTick(
        token=token,
        symbol=symbol,
        underlying=Underlying.NIFTY,
        instrument_type=itype,
        ltp=(Decimal(bid) + Decimal(ask)) / 2,
        timestamp=clock.now(),
        bid=Decimal(bid),
        ask=Decimal(ask),
        strike=Decimal("24000") if itype.is_option else None,
        expiry=EXPIRY if itype.is_option else None,
    )


class TestOpening:
    def test_buy_opens_long(self, manager, clock, bus):
        position = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))

        assert position.side == PositionSide.LONG
        assert position.quantity == 50
        assert position.avg_price == Decimal("100")
        assert manager.get_position_by_symbol(SYMBOL) is position
        assert len(bus.history(EventType.POSITION_OPENED)) == 1

    def test_sell_opens_short(self, manager, clock):
        position = manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "100"))
        assert position.side == PositionSide.SHORT
        assert position.signed_quantity == -50

    def test_strategy_id_carried(self, manager, clock):
        position = manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "100", strategy_id="strat_1"))
        assert position.strategy_id == "strat_1"

    def test_unfilled_order_rejected(self, manager, clock):
        with pytest.raises(PositionError):
            manager.apply_fill(filled(clock, OrderSide.BUY, 50, "100", status=OrderStatus.OPEN))


class TestUpdating:
    def test_adding_averages_price(self, manager, clock, bus):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        position = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "110"))

        assert position.quantity == 100
        assert position.avg_price == Decimal("105")
        assert len(bus.history(EventType.POSITION_UPDATED)) == 1

    def test_partial_reduce_realizes_pnl(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        position = manager.process_order_fill(filled(clock, OrderSide.SELL, 25, "110"))

        assert position.quantity == 25
        assert position.avg_price == Decimal("100")
        assert position.realized_pnl == Decimal("250")

    def test_short_reduce_realizes_pnl(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "100"))
        position = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "80"))
        assert position.quantity == 0
        assert position.realized_pnl == Decimal("1000")

    def test_close_removes_position(self, manager, clock, bus):
        opened = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        closed = manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "90"))

        assert closed is opened
        assert closed.quantity == 0
        assert manager.get_position(opened.id) is None
        assert manager.is_closed(opened.id)
        assert len(manager) == 0

        event = bus.history(EventType.POSITION_CLOSED)[-1]
        assert event.payload["position"] is opened
        assert event.payload["closing_trade"].pnl_impact == Decimal("-500")

    def test_flip_long_to_short(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        position = manager.process_order_fill(filled(clock, OrderSide.SELL, 75, "105"))

        assert position.side == PositionSide.SHORT
        assert position.quantity == 25
        assert position.avg_price == Decimal("105")
        assert position.greeks is None
        assert manager.get_aggregate_pnl().realized == Decimal("250")

    def test_partial_fill_applied_per_fill(self, manager, clock):
        order = filled(clock, OrderSide.BUY, 100, "100", status=OrderStatus.PARTIAL)
        fill = Fill(
            id="fill_1", order_id=order.id, price=Decimal("100"), quantity=50,
            slippage=Decimal("0.05"), latency_ms=0, timestamp=clock.now(),
        )
        trade = manager.apply_fill(order, fill)

        assert trade.quantity == 50
        assert trade.slippage == Decimal("0.05")
        assert manager.get_position_by_symbol(SYMBOL).quantity == 50

    def test_trades_recorded(self, manager, clock):
        position = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        manager.process_order_fill(filled(clock, OrderSide.BUY, 25, "101"))

        trades = manager.get_trades_for_position(position.id)
        assert len(trades) == 2
        assert position.trade_ids == [t.id for t in trades]
        assert manager.get_trade(trades[0].id) is trades[0]


class TestMarkToMarket:
    def test_unrealized_from_mid(self, manager, clock, market_state):
        manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "100"))
        market_state.update_from_tick(tick(clock, "89.90", "90.10"))
        manager.update_market_prices()

        position = manager.get_position_by_symbol(SYMBOL)
        assert position.current_price == Decimal("90.00")
        assert position.unrealized_pnl == Decimal("500")

    def test_greeks_computed_with_spot(self, manager, clock, market_state):
        manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "150"))
        market_state.update_from_tick(tick(clock, "24000", "24000", token=256265, symbol="NIFTY",
                                           itype=InstrumentType.SPOT))
        market_state.update_from_tick(tick(clock, "149", "151"))
        manager.update_market_prices()

        position = manager.get_position_by_symbol(SYMBOL)
        assert position.greeks is not None
        assert market_state.get_greeks(TOKEN) is position.greeks
        net = manager.get_net_greeks()
        assert net.delta < 0
        assert net.theta > 0

    def test_missing_data_skipped(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        manager.update_market_prices()
        assert manager.get_position_by_symbol(SYMBOL).unrealized_pnl == 0


class TestQueriesAndLifecycle:
    def test_require_position_raises(self, manager):
        with pytest.raises(PositionNotFoundError):
            manager.require_position("pos_missing")

    def test_filters(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        assert len(manager.get_positions_for_underlying(Underlying.NIFTY)) == 1
        assert len(manager.get_positions_for_underlying(Underlying.BANKNIFTY)) == 0
        assert len(manager.get_positions_for_expiry(EXPIRY)) == 1

    def test_aggregate_survives_close(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "110"))
        pnl = manager.get_aggregate_pnl()
        assert pnl.realized == Decimal("500")
        assert pnl.position_count == 0
        assert pnl.trade_count == 2

    def test_reset_daily_keeps_positions(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        manager.process_order_fill(filled(clock, OrderSide.SELL, 25, "110"))
        manager.reset_daily()

        assert manager.get_aggregate_pnl().realized == 0
        assert manager.get_position_by_symbol(SYMBOL).realized_pnl == 0
        assert len(manager) == 1

    def test_restore_replaces_book(self, manager, clock):
        position = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))
        manager.clear()
        manager.restore([position])
        assert manager.get_position(position.id) is position
        assert manager.get_all_trades() == []


class TestClosedHistoryCap:
    @pytest.fixture
    def small(self, market_state, clock, bus):
        return PositionManager(market_state, SessionManager(SessionConfig(), clock), bus, clock=clock, max_closed=2)

    def round_trip(self, manager, clock, symbol, token):
        opened = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100", symbol=symbol, token=token))
        manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "101", symbol=symbol, token=token))
        return opened

    def test_oldest_closed_positions_pruned_with_trades(self, small, clock):
        first = self.round_trip(small, clock, "A", 1)
        second = self.round_trip(small, clock, "B", 2)
        third = self.round_trip(small, clock, "C", 3)

        assert not small.is_closed(first.id)
        assert small.get_trades_for_position(first.id) == []
        assert small.is_closed(second.id)
        assert small.is_closed(third.id)
        assert len(small.get_all_trades()) == 4

        pnl = small.get_aggregate_pnl()
        assert pnl.trade_count == 6
        assert pnl.realized == Decimal("150")

    def test_reset_daily_drops_closed_trades(self, manager, clock):
        manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100", symbol="A", token=1))
        manager.process_order_fill(filled(clock, OrderSide.SELL, 50, "101", symbol="A", token=1))
        held = manager.process_order_fill(filled(clock, OrderSide.BUY, 50, "100"))

        manager.reset_daily()

        assert [t.position_id for t in manager.get_all_trades()] == [held.id]
        assert manager.get_aggregate_pnl().trade_count == 0
