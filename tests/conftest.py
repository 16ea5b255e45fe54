"""Shared fixtures: small hand-checked bar series and a broker factory."""

from __future__ import annotations

import math
from typing import Any, Callable, Sequence

import pandas as pd
import pytest

from barsim import Broker, Strategy
from barsim.strategy import Context

START = pd.Timestamp("2024-01-01", tz="UTC")  # a Monday


def _ts(day: int) -> pd.Timestamp:
    return START + pd.Timedelta(days=day)


def make_bars(ohlc: Sequence[tuple[float, float, float, float]]) -> list[dict[str, Any]]:
    """Daily bar rows from (open, high, low, close) tuples."""
    return [
        {"date": _ts(i), "open": o, "high": h, "low": l, "close": c, "volume": 1000.0}
        for i, (o, h, l, c) in enumerate(ohlc)
    ]


def trending_bars(n: int = 20, start: float = 100.0) -> list[dict[str, Any]]:
    """Open rises by 1 per bar; close sits half a point above the open."""
    return make_bars(
        [(start + i, start + i + 1, start + i - 1, start + i + 0.5) for i in range(n)]
    )


def wave_bars(n: int = 200) -> list[dict[str, Any]]:
    rows = []
    prev_close = 100.0
    for i in range(n):
        close = 100.0 + 10.0 * math.sin(i / 5.0)
        rows.append((prev_close, max(prev_close, close) + 1, min(prev_close, close) - 1, close))
        prev_close = close
    return make_bars(rows)


@pytest.fixture
def single_bar():
    return make_bars([(10.0, 11.0, 9.0, 10.0)])


@pytest.fixture
def flat_bars():
    return make_bars([(100.0, 101.0, 99.0, 100.0)] * 5)


@pytest.fixture
def broker_factory() -> Callable[..., Broker]:
    def _make(rows, **kwargs) -> Broker:
        kwargs.setdefault("cash", 10_000.0)
        return Broker(rows, **kwargs)

    return _make


class Idle(Strategy):
    """Places no orders."""

    def init(self) -> None:
        pass

    def next(self, context: Context) -> None:
        pass


class BuyOnFirstBar(Strategy):
    """Buys `size` units on the first bar and holds until the run closes everything."""

    params = {"size": 10}

    def init(self) -> None:
        pass

    def next(self, context: Context) -> None:
        if context.index == 0:
            self.buy(size=self.size)


class Recorder(Strategy):
    """Keeps every context it receives."""

    def init(self) -> None:
        self.seen: list[Context] = []
        self.add_indicator("tail", [1.0, 2.0, 3.0])
        self.add_signal("flag", [True, False])

    def next(self, context: Context) -> None:
        self.seen.append(context)
