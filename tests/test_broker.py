import math

import numpy as np
import pytest

from barsim import Broker, Order
from conftest import make_bars


def _step(broker: Broker, times: int = 1) -> None:
    for _ in range(times):
        broker.next()


class TestSettings:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"cash": 0},
            {"cash": -5},
            {"cash": float("nan")},
            {"commission": 0.1},
            {"commission": -0.2},
            {"margin": 0},
            {"margin": 1.5},
        ],
    )
    def test_invalid_settings_raise(self, single_bar, kwargs):
        with pytest.raises(ValueError):
            Broker(single_bar, **kwargs)

    def test_negative_commission_is_a_rebate(self, single_bar):
        broker = Broker(single_bar, commission=-0.05)
        assert broker.commission == -0.05

    def test_leverage_is_inverse_margin(self, single_bar):
        assert Broker(single_bar, margin=0.25).leverage == 4.0


class TestCursor:
    def test_equities_start_unset(self, flat_bars):
        broker = Broker(flat_bars)
        assert np.isnan(broker.equities).all()
        assert broker.cursor == 0

    def test_next_records_equity_and_advances(self, flat_bars):
        broker = Broker(flat_bars)
        broker.next()
        assert broker.cursor == 1
        assert broker.bar_index == 0
        assert broker.equities[0] == 10_000.0
        assert np.isnan(broker.equities[1])

    def test_next_past_end_raises(self, single_bar):
        broker = Broker(single_bar)
        broker.next()
        with pytest.raises(RuntimeError):
            broker.next()

    def test_last_settles_final_bar(self, flat_bars):
        broker = Broker(flat_bars)
        _step(broker, len(flat_bars))
        broker.last()
        assert broker.cursor == len(flat_bars)
        assert broker.bar_index == len(flat_bars) - 1

    def test_last_price_is_close_of_processed_bar(self):
        bars = make_bars([(100.0, 101.0, 99.0, 100.5), (102.0, 103.0, 101.0, 102.5)])
        broker = Broker(bars)
        broker.next()
        assert broker.last_price == 100.5
        broker.next()
        assert broker.last_price == 102.5


class TestOrderPlacement:
    def test_zero_size_rejected(self, single_bar):
        broker = Broker(single_bar)
        with pytest.raises(ValueError):
            broker.new_order(0)

    def test_long_ladder_violation(self, flat_bars):
        broker = Broker(flat_bars)
        with pytest.raises(ValueError, match="Long orders require"):
            broker.new_order(10, sl_price=110.0)
        with pytest.raises(ValueError, match="Long orders require"):
            broker.new_order(10, tp_price=90.0)

    def test_short_ladder_violation(self, flat_bars):
        broker = Broker(flat_bars)
        with pytest.raises(ValueError, match="Short orders require"):
            broker.new_order(-10, tp_price=110.0)

    def test_limit_price_is_checked_against_brackets(self, flat_bars):
        broker = Broker(flat_bars)
        with pytest.raises(ValueError):
            broker.new_order(10, limit_price=95.0, sl_price=96.0)
        order = broker.new_order(10, limit_price=95.0, sl_price=90.0, tp_price=120.0)
        assert order in broker.orders

    def test_top_level_orders_append_in_order(self, flat_bars):
        broker = Broker(flat_bars)
        first = broker.new_order(1)
        second = broker.new_order(2)
        assert broker.orders == [first, second]


class TestMarketFills:
    def test_market_order_fills_at_open(self, single_bar):
        broker = Broker(single_bar, cash=10_000)
        broker.new_order(10)
        broker.next()
        assert len(broker.trades) == 1
        trade = broker.trades[0]
        assert trade.size == 10
        assert trade.entry_price == 10.0
        assert trade.entry_bar == 0
        assert broker.orders == []
        assert broker.cash == 10_000.0
        assert broker.equity == 10_000.0
        assert broker.equities[0] == 10_000.0

    def test_insufficient_margin_drops_order(self, single_bar):
        broker = Broker(single_bar, cash=10_000)
        broker.new_order(1500)
        broker.next()
        assert broker.trades == []
        assert broker.orders == []
        assert broker.equity == 10_000.0

    def test_commission_adjusts_entry_price(self):
        bars = make_bars([(100.0, 101.0, 99.0, 100.0)])
        long_broker = Broker(bars, commission=0.01)
        long_broker.new_order(10)
        long_broker.next()
        assert long_broker.trades[0].entry_price == pytest.approx(101.0)
        assert long_broker.equity == pytest.approx(9_990.0)

        short_broker = Broker(bars, commission=0.01)
        short_broker.new_order(-10)
        short_broker.next()
        assert short_broker.trades[0].entry_price == pytest.approx(99.0)

    def test_trade_on_close_fills_at_previous_close(self):
        bars = make_bars([(100.0, 101.0, 99.0, 100.0), (102.0, 104.0, 101.0, 103.0)])
        broker = Broker(bars, trade_on_close=True)
        broker.next()
        broker.new_order(10)
        broker.next()
        trade = broker.trades[0]
        assert trade.entry_price == 100.0
        assert trade.entry_bar == 0
        assert broker.equity == pytest.approx(10_030.0)

    def test_fractional_size_uses_available_margin(self, flat_bars):
        broker = Broker(flat_bars, cash=10_000)
        broker.new_order(0.5)
        broker.next()
        assert broker.trades[0].size == 50

    def test_fractional_size_rounding_to_zero_is_dropped(self):
        bars = make_bars([(200.0, 201.0, 199.0, 200.0)])
        broker = Broker(bars, cash=10_000)
        broker.new_order(0.01)
        broker.next()
        assert broker.trades == []
        assert broker.orders == []

    def test_leverage_allows_larger_positions(self, flat_bars):
        broker = Broker(flat_bars, cash=10_000, margin=0.5)
        broker.new_order(150)
        broker.next()
        assert broker.trades[0].size == 150
        assert broker.margin_available == pytest.approx(2_500.0)


class TestConditionalFills:
    def test_limit_waits_until_price_trades_through(self):
        bars = make_bars([(100.0, 101.0, 96.0, 99.0), (98.0, 99.0, 94.0, 97.0)])
        broker = Broker(bars)
        order = broker.new_order(10, limit_price=95.0)
        broker.next()
        assert broker.trades == []
        assert broker.orders == [order]
        broker.next()
        trade = broker.trades[0]
        assert trade.entry_price == 95.0
        assert trade.entry_bar == 1

    def test_buy_stop_fills_at_stop(self):
        bars = make_bars([(100.0, 104.0, 99.0, 103.0), (104.0, 107.0, 103.0, 106.0)])
        broker = Broker(bars)
        broker.new_order(10, stop_price=105.0)
        broker.next()
        assert broker.trades == []
        broker.next()
        assert broker.trades[0].entry_price == 105.0
        assert broker.trades[0].entry_bar == 1

    def test_stop_limit_waits_a_bar_when_limit_is_better_than_trigger(self):
        bars = make_bars(
            [
                (100.0, 104.0, 99.0, 103.0),
                (104.0, 107.0, 103.0, 106.0),
                (106.0, 107.0, 103.5, 105.0),
            ]
        )
        broker = Broker(bars)
        order = broker.new_order(10, limit_price=104.0, stop_price=105.0)
        broker.next()
        broker.next()
        assert broker.trades == []
        assert order in broker.orders
        assert order.stop is None
        broker.next()
        trade = broker.trades[0]
        assert trade.entry_price == 104.0
        assert trade.entry_bar == 2


class TestContingentOrders:
    def test_take_profit_closes_trade(self):
        bars = make_bars([(100.0, 101.0, 99.0, 100.0), (100.0, 112.0, 99.0, 105.0)])
        broker = Broker(bars)
        broker.new_order(10, tp_price=110.0)
        broker.next()
        trade = broker.trades[0]
        assert trade.tp == 110.0
        assert broker.orders == [trade.tp_order]

        broker.next()
        assert broker.trades == []
        assert broker.orders == []
        closed = broker.closed_trades[0]
        assert closed.exit_price == 110.0
        assert closed.exit_bar == 1
        assert broker.cash == pytest.approx(10_100.0)

    def test_stop_loss_fills_at_stop(self):
        bars = make_bars([(100.0, 101.0, 99.0, 100.0), (100.0, 101.0, 94.0, 96.0)])
        broker = Broker(bars)
        broker.new_order(10, sl_price=95.0)
        _step(broker, 2)
        assert broker.closed_trades[0].exit_price == 95.0
        assert broker.cash == pytest.approx(9_950.0)

    def test_stop_loss_fills_at_open_on_gap(self):
        bars = make_bars([(100.0, 101.0, 99.0, 100.0), (90.0, 92.0, 88.0, 91.0)])
        broker = Broker(bars)
        broker.new_order(10, sl_price=95.0)
        _step(broker, 2)
        assert broker.closed_trades[0].exit_price == 90.0
        assert broker.cash == pytest.approx(9_900.0)

    def test_bracket_can_fill_on_entry_bar(self):
        bars = make_bars([(100.0, 101.0, 94.0, 96.0)])
        broker = Broker(bars)
        broker.new_order(10, sl_price=95.0)
        broker.next()
        assert broker.trades == []
        closed = broker.closed_trades[0]
        assert closed.entry_bar == 0
        assert closed.exit_bar == 0
        assert closed.exit_price == 95.0
        assert broker.cash == pytest.approx(9_950.0)

    def test_partial_close_resizes_brackets(self, flat_bars):
        broker = Broker(flat_bars)
        broker.new_order(10)
        broker.next()
        trade = broker.trades[0]
        trade.sl = 90.0
        trade.close(0.5)
        broker.next()
        assert trade.size == 5
        assert trade.sl == 90.0
        assert trade.sl_order.size == -5
        assert broker.closed_trades[0].size == 5


class TestNetting:
    @pytest.fixture
    def two_bars(self):
        return make_bars([(100.0, 101.0, 99.0, 100.0), (110.0, 111.0, 109.0, 110.0)])

    def test_opposite_order_reduces_trade(self, two_bars):
        broker = Broker(two_bars)
        broker.new_order(10)
        broker.next()
        broker.new_order(-4)
        broker.next()
        assert [trade.size for trade in broker.trades] == [6]
        closed = broker.closed_trades[0]
        assert closed.size == 4
        assert closed.entry_bar == 0
        assert closed.exit_price == 110.0
        assert broker.cash == pytest.approx(10_040.0)
        assert broker.equity == pytest.approx(10_100.0)

    def test_larger_opposite_order_reverses(self, two_bars):
        broker = Broker(two_bars)
        broker.new_order(10)
        broker.next()
        broker.new_order(-15)
        broker.next()
        assert [trade.size for trade in broker.trades] == [-5]
        assert broker.trades[0].entry_price == 110.0
        assert broker.cash == pytest.approx(10_100.0)

    def test_hedging_keeps_both_sides(self, two_bars):
        broker = Broker(two_bars, hedging=True)
        broker.new_order(10)
        broker.next()
        broker.new_order(-4)
        broker.next()
        assert [trade.size for trade in broker.trades] == [10, -4]
        assert broker.closed_trades == []


class TestExclusiveOrders:
    def test_new_order_cancels_pending_and_closes_trades(self, flat_bars):
        broker = Broker(flat_bars, exclusive_orders=True)
        broker.new_order(10)
        broker.next()
        trade = broker.trades[0]
        pending = Order(broker, 5, limit_price=50.0)
        broker.orders.append(pending)

        new = broker.new_order(3)
        assert pending not in broker.orders
        assert len(broker.orders) == 2
        assert broker.orders[0].parent_trade is trade
        assert broker.orders[0].size == -10
        assert broker.orders[1] is new

        broker.next()
        assert len(broker.closed_trades) == 1
        assert [t.size for t in broker.trades] == [3]


class TestBankruptcy:
    def test_wipeout_zeroes_equity_and_closes_trades(self):
        bars = make_bars(
            [
                (100.0, 100.0, 100.0, 100.0),
                (150.0, 210.0, 150.0, 200.0),
                (200.0, 200.0, 200.0, 200.0),
            ]
        )
        broker = Broker(bars, cash=10_000)
        broker.new_order(-100)
        broker.next()
        assert broker.equities[0] == 10_000.0
        broker.next()
        assert broker.trades == []
        assert broker.closed_trades[0].exit_price == 200.0
        assert broker.cash == 0.0
        assert broker.margin_available == 0.0
        broker.next()
        assert (broker.equities == 0.0).all()


def test_equity_is_cash_plus_open_pl():
    bars = make_bars([(100.0, 101.0, 99.0, 100.0), (101.0, 103.0, 100.0, 102.0), (102.0, 104.0, 101.0, 103.0)])
    broker = Broker(bars)
    broker.new_order(10)
    for i in range(len(bars)):
        broker.next()
        expected = broker.cash + sum(trade.pl for trade in broker.trades)
        assert broker.equities[i] == pytest.approx(expected)
        assert not math.isnan(broker.equities[i])
