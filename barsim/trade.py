"""Trade entity: an open or closed position lot."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any, Optional

import pandas as pd

from .order import Order

if TYPE_CHECKING:
    from .broker import Broker

_FIELDS: dict[str, str] = {
    "size": "_size",
    "entry_price": "_entry_price",
    "entry_bar": "_entry_bar",
    "exit_price": "_exit_price",
    "exit_bar": "_exit_bar",
    "sl_order": "_sl_order",
    "tp_order": "_tp_order",
    "tag": "_tag",
}


class Trade:
    """
    A lot opened by a filled order.

    `sl` and `tp` are backed by contingent orders held in the broker's order list.
    Setting either replaces the backing order; setting None or 0 just cancels it.
    """

    def __init__(
        self,
        broker: "Broker",
        size: int,
        entry_price: float,
        entry_bar: int,
        exit_price: Optional[float] = None,
        exit_bar: Optional[int] = None,
        sl_order: Optional[Order] = None,
        tp_order: Optional[Order] = None,
        tag: Any = None,
    ):
        self._broker = broker
        self._size = size
        self._entry_price = entry_price
        self._entry_bar = entry_bar
        self._exit_price = exit_price
        self._exit_bar = exit_bar
        self._sl_order = sl_order
        self._tp_order = tp_order
        self._tag = tag

    def __repr__(self) -> str:
        exit_part = f" exit={self._exit_bar}@{self._exit_price}" if self._exit_bar is not None else ""
        tag_part = f" tag={self._tag}" if self._tag is not None else ""
        return (
            f"<Trade size={self._size} entry={self._entry_bar}@{self._entry_price}"
            f"{exit_part} pl={self.pl:.0f}{tag_part}>"
        )

    def close(self, portion: float = 1.0) -> Order:
        """Queue a market order closing `portion` of the trade; it fills on the next broker pass."""
        if not 0 < portion <= 1:
            raise ValueError(f"portion must be a fraction in (0, 1], got {portion!r}")
        # Halves round up.
        size = max(1, math.floor(abs(self._size) * portion + 0.5))
        size = -size if self._size > 0 else size
        return self._broker.new_order(size, parent_trade=self, tag=self._tag)

    def replace(self, **fields: Any) -> "Trade":
        """Set exactly the given fields and return self."""
        unknown = sorted(set(fields) - set(_FIELDS))
        if unknown:
            raise ValueError(f"Unknown trade fields: {unknown}")
        for name, value in fields.items():
            setattr(self, _FIELDS[name], value)
        return self

    def copy(self, **overrides: Any) -> "Trade":
        """New Trade with the same values; backing SL/TP orders are only shared if passed."""
        values: dict[str, Any] = {
            "size": self._size,
            "entry_price": self._entry_price,
            "entry_bar": self._entry_bar,
            "exit_price": self._exit_price,
            "exit_bar": self._exit_bar,
            "sl_order": None,
            "tp_order": None,
            "tag": self._tag,
        }
        unknown = sorted(set(overrides) - set(values))
        if unknown:
            raise ValueError(f"Unknown trade fields: {unknown}")
        values.update(overrides)
        return Trade(self._broker, **values)

    @property
    def size(self) -> int:
        return self._size

    @property
    def entry_price(self) -> float:
        return self._entry_price

    @property
    def exit_price(self) -> Optional[float]:
        return self._exit_price

    @property
    def entry_bar(self) -> int:
        return self._entry_bar

    @property
    def exit_bar(self) -> Optional[int]:
        return self._exit_bar

    @property
    def tag(self) -> Any:
        return self._tag

    @property
    def sl_order(self) -> Optional[Order]:
        return self._sl_order

    @property
    def tp_order(self) -> Optional[Order]:
        return self._tp_order

    @property
    def entry_time(self) -> pd.Timestamp:
        return self._broker.data.index[self._entry_bar]

    @property
    def exit_time(self) -> Optional[pd.Timestamp]:
        if self._exit_bar is None:
            return None
        return self._broker.data.index[self._exit_bar]

    @property
    def is_long(self) -> bool:
        return self._size > 0

    @property
    def is_short(self) -> bool:
        return not self.is_long

    @property
    def pl(self) -> float:
        """Profit (positive) or loss (negative) in cash units, marked at the last price while open."""
        price = self._exit_price if self._exit_price is not None else self._broker.last_price
        return self._size * (price - self._entry_price)

    @property
    def pl_pct(self) -> float:
        price = self._exit_price if self._exit_price is not None else self._broker.last_price
        return math.copysign(1, self._size) * (price / self._entry_price - 1)

    @property
    def value(self) -> float:
        price = self._exit_price if self._exit_price is not None else self._broker.last_price
        return abs(self._size) * price

    @property
    def sl(self) -> Optional[float]:
        return self._sl_order.stop if self._sl_order is not None else None

    @sl.setter
    def sl(self, price: Optional[float]) -> None:
        self._set_contingent("sl", price)

    @property
    def tp(self) -> Optional[float]:
        return self._tp_order.limit if self._tp_order is not None else None

    @tp.setter
    def tp(self, price: Optional[float]) -> None:
        self._set_contingent("tp", price)

    def _set_contingent(self, kind: str, price: Optional[float]) -> None:
        assert kind in ("sl", "tp")
        if price is not None and not 0 <= price < math.inf:
            raise ValueError(f"{kind} price must be a finite non-negative number, got {price!r}")

        attr = f"_{kind}_order"
        existing: Optional[Order] = getattr(self, attr)
        if existing is not None:
            existing.cancel()
        if price:
            price_kwarg = {"stop_price": price} if kind == "sl" else {"limit_price": price}
            order = self._broker.new_order(-self._size, parent_trade=self, tag=self._tag, **price_kwarg)
            setattr(self, attr, order)
