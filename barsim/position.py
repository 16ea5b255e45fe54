"""Aggregate view over a broker's open trades."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .broker import Broker


class Position:
    """Read-only position summary; `if broker.position:` is true while any units are held."""

    def __init__(self, broker: "Broker"):
        self._broker = broker

    def __bool__(self) -> bool:
        return self.size != 0

    def __repr__(self) -> str:
        return f"<Position size={self.size} trades={len(self._broker.trades)} pl={self.pl:.0f}>"

    @property
    def size(self) -> int:
        return sum(trade.size for trade in self._broker.trades)

    @property
    def pl(self) -> float:
        return sum(trade.pl for trade in self._broker.trades)

    @property
    def pl_pct(self) -> float:
        """Size-weighted average of open trade returns."""
        trades = self._broker.trades
        total = sum(abs(trade.size) for trade in trades)
        if not total:
            return 0.0
        return sum(trade.pl_pct * abs(trade.size) / total for trade in trades)

    @property
    def is_long(self) -> bool:
        return self.size > 0

    @property
    def is_short(self) -> bool:
        return self.size < 0

    def close(self, portion: float = 1.0) -> None:
        """Queue a close order of `portion` for every open trade."""
        for trade in list(self._broker.trades):
            trade.close(portion)
