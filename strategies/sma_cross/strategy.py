"""Moving-average crossover example strategy."""

from __future__ import annotations

import pandas as pd

from barsim import Context, Strategy


class SmaCross(Strategy):
    """Go long when the fast SMA crosses above the slow one, short on the opposite cross."""

    params = {"n1": 20, "n2": 60, "size": 1000}

    def init(self) -> None:
        close = pd.Series(self.data.close)
        fast = close.rolling(int(self.n1)).mean()
        slow = close.rolling(int(self.n2)).mean()
        self.add_indicator("fast", fast)
        self.add_indicator("slow", slow)

        above = fast > slow
        below = fast < slow
        self.add_signal("cross_up", (above & below.shift(1, fill_value=False)).to_numpy())
        self.add_signal("cross_down", (below & above.shift(1, fill_value=False)).to_numpy())

    def next(self, context: Context) -> None:
        if context.index < self.n1 or context.index < self.n2:
            return
        price = context.data["close"]
        if context.signals["cross_up"]:
            self.buy(size=self.size, tp_price=price * 1.15, sl_price=price * 0.9)
        if context.signals["cross_down"]:
            self.sell(size=self.size)
