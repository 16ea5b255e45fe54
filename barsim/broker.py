"""Bar-by-bar broker simulation: order matching, trade accounting and equity tracking."""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

import numpy as np
import pandas as pd

from core.numeric import sign

from .bars import BarFrame, load_bars
from .models import validate_broker_settings
from .order import Order
from .position import Position
from .trade import Trade

logger = logging.getLogger(__name__)


class Broker:
    """
    Simulated account over a fixed bar series.

    Each call to `next()` processes pending orders against the next bar, records
    that bar's equity and advances the cursor. `last()` jumps to the final bar.
    """

    def __init__(
        self,
        data: Any,
        *,
        cash: float = 10_000.0,
        commission: float = 0.0,
        margin: float = 1.0,
        trade_on_close: bool = False,
        hedging: bool = False,
        exclusive_orders: bool = False,
    ):
        validate_broker_settings(cash, commission, margin)
        self._data: BarFrame = load_bars(data)
        self._cash = float(cash)
        self._commission = float(commission)
        self._leverage = 1.0 / float(margin)
        self._trade_on_close = bool(trade_on_close)
        self._hedging = bool(hedging)
        self._exclusive_orders = bool(exclusive_orders)

        self._equities = np.full(len(self._data), np.nan)
        self._i = 0
        self._bar = 0
        self.orders: list[Order] = []
        self.trades: list[Trade] = []
        self.closed_trades: list[Trade] = []
        self.position = Position(self)

    def __repr__(self) -> str:
        return f"<Broker: {self._cash:.0f}{self.position.pl:+.1f} ({len(self.trades)} trades)>"

    @property
    def data(self) -> BarFrame:
        return self._data

    @property
    def index(self) -> pd.DatetimeIndex:
        return self._data.index

    @property
    def cursor(self) -> int:
        """Position of the next bar `next()` will process."""
        return self._i

    @property
    def bar_index(self) -> int:
        """Position of the most recently processed bar."""
        return self._bar

    @property
    def cash(self) -> float:
        return self._cash

    @property
    def commission(self) -> float:
        return self._commission

    @property
    def leverage(self) -> float:
        return self._leverage

    @property
    def equities(self) -> np.ndarray:
        return self._equities

    @property
    def last_price(self) -> float:
        """Close of the most recently processed bar."""
        return float(self._data.close[self._bar])

    @property
    def equity(self) -> float:
        return self._cash + sum(trade.pl for trade in self.trades)

    @property
    def margin_available(self) -> float:
        margin_used = sum(trade.value / self._leverage for trade in self.trades)
        return max(0.0, self.equity - margin_used)

    def new_order(
        self,
        size: float,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        sl_price: Optional[float] = None,
        tp_price: Optional[float] = None,
        parent_trade: Optional[Trade] = None,
        tag: Any = None,
    ) -> Order:
        """Validate and queue an order; contingent orders go to the head of the queue."""
        order = Order(self, size, limit_price, stop_price, sl_price, tp_price, parent_trade, tag)

        entry_price = limit_price or stop_price or self._adjust_price(size)
        if order.is_long:
            if not (sl_price or -math.inf) < entry_price < (tp_price or math.inf):
                raise ValueError(f"Long orders require: SL ({sl_price}) < LIMIT ({entry_price}) < TP ({tp_price})")
        elif not (tp_price or -math.inf) < entry_price < (sl_price or math.inf):
            raise ValueError(f"Short orders require: TP ({tp_price}) < LIMIT ({entry_price}) < SL ({sl_price})")

        if parent_trade is not None:
            self.orders.insert(0, order)
        else:
            if self._exclusive_orders:
                for pending in list(self.orders):
                    if not pending.is_contingent:
                        pending.cancel()
                for trade in list(self.trades):
                    trade.close()
            self.orders.append(order)
        return order

    def next(self) -> None:
        if self._i >= len(self._data):
            raise RuntimeError("No bars left to process; use last() to settle the final bar")
        i = self._bar = self._i
        self._process_orders()

        equity = self.equity
        self._equities[i] = equity

        if equity <= 0:
            assert self.margin_available <= 0
            logger.warning("Account wiped out at bar %d (%s); equity series reset to zero", i, self.index[i])
            for trade in list(self.trades):
                self._close_trade(trade, float(self._data.close[i]), i)
            self._cash = 0.0
            self._equities[:] = 0.0

        self._i += 1

    def last(self) -> None:
        """Process the final bar, e.g. after queueing closing orders for open trades."""
        self._i = len(self._data) - 1
        self.next()

    def _adjust_price(self, size: float, price: Optional[float] = None) -> float:
        """Commission-adjusted price: longs pay a premium, shorts receive a discount."""
        return (price or self.last_price) * (1 + self._commission * sign(size))

    def _process_orders(self) -> None:
        if self._process_orders_pass():
            # Brackets of trades opened by market orders may already be fillable on this bar.
            if self._process_orders_pass():
                logger.debug("Bar %d: order book still unsettled after reprocessing", self._i)

    def _process_orders_pass(self) -> bool:
        i = self._i
        data = self._data
        open_, high, low = float(data.open[i]), float(data.high[i]), float(data.low[i])
        prev_close = float(data.close[max(i - 1, 0)])
        reprocess = False

        for order in list(self.orders):
            if order not in self.orders:
                continue

            stop_price = order.stop
            if stop_price:
                is_stop_hit = high > stop_price if order.is_long else low < stop_price
                if not is_stop_hit:
                    continue
                order.replace(stop_price=None)

            if order.limit:
                is_limit_hit = low < order.limit if order.is_long else high > order.limit
                is_limit_hit_before_stop = is_limit_hit and (
                    order.limit < (stop_price or -math.inf)
                    if order.is_long
                    else order.limit > (stop_price or math.inf)
                )
                if not is_limit_hit or is_limit_hit_before_stop:
                    continue
                price = min(stop_price or open_, order.limit) if order.is_long else max(stop_price or open_, order.limit)
            else:
                price = prev_close if self._trade_on_close else open_
                price = max(price, stop_price or -math.inf) if order.is_long else min(price, stop_price or math.inf)

            is_market_order = not order.limit and not stop_price
            time_index = max(i - 1, 0) if is_market_order and self._trade_on_close else i

            if order.parent_trade is not None:
                trade = order.parent_trade
                prev_size = trade.size
                size = math.copysign(min(abs(prev_size), abs(order.size)), order.size)
                if trade in self.trades:
                    self._reduce_trade(trade, price, int(size), time_index)
                    assert order.size != -prev_size or trade not in self.trades
                if order is trade.sl_order or order is trade.tp_order:
                    assert order.size == -trade.size
                    assert order not in self.orders
                else:
                    assert 1 <= abs(size) <= abs(prev_size)
                    self._discard(order)
                continue

            adjusted_price = self._adjust_price(order.size, price)

            size = order.size
            if -1 < size < 1:
                size = math.floor(self.margin_available * self._leverage * abs(size) / adjusted_price) * sign(size)
                if not size:
                    logger.debug("Bar %d: dropping %r, fractional size rounds to zero units", i, order)
                    self._discard(order)
                    continue
            assert size == round(size)
            need_size = int(size)

            if not self._hedging:
                for trade in list(self.trades):
                    if trade.is_long == order.is_long:
                        continue
                    assert trade.size * order.size < 0
                    if abs(need_size) >= abs(trade.size):
                        self._close_trade(trade, price, time_index)
                        need_size += trade.size
                    else:
                        self._reduce_trade(trade, price, need_size, time_index)
                        need_size = 0
                    if not need_size:
                        break

            if abs(need_size) * adjusted_price > self.margin_available * self._leverage:
                logger.debug("Bar %d: rejecting %r, insufficient margin", i, order)
                self._discard(order)
                continue

            if need_size:
                self._open_trade(adjusted_price, need_size, order.sl, order.tp, time_index, order.tag)
                if (order.sl or order.tp) and is_market_order:
                    reprocess = True

            self._discard(order)

        return reprocess

    def _discard(self, order: Order) -> None:
        if order in self.orders:
            self.orders.remove(order)

    def _open_trade(
        self,
        price: float,
        size: int,
        sl: Optional[float],
        tp: Optional[float],
        time_index: int,
        tag: Any,
    ) -> None:
        trade = Trade(self, size, price, time_index, tag=tag)
        self.trades.append(trade)
        if tp:
            trade.tp = tp
        if sl:
            trade.sl = sl

    def _close_trade(self, trade: Trade, price: float, time_index: int) -> None:
        self.trades.remove(trade)
        if trade.sl_order is not None:
            self._discard(trade.sl_order)
        if trade.tp_order is not None:
            self._discard(trade.tp_order)
        self.closed_trades.append(trade.replace(exit_price=price, exit_bar=time_index))
        self._cash += trade.pl

    def _reduce_trade(self, trade: Trade, price: float, size: int, time_index: int) -> None:
        assert trade.size * size < 0
        assert abs(trade.size) >= abs(size)

        size_left = trade.size + size
        assert size_left * trade.size >= 0
        if not size_left:
            closed = trade
        else:
            trade.replace(size=size_left)
            if trade.sl_order is not None:
                trade.sl_order.replace(size=-trade.size)
            if trade.tp_order is not None:
                trade.tp_order.replace(size=-trade.size)
            closed = trade.copy(size=-size)
            self.trades.append(closed)
        self._close_trade(closed, price, time_index)
