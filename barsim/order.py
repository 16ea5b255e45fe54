"""Order entity: a request to change position size, optionally conditional or contingent."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .broker import Broker
    from .trade import Trade

_FIELDS: dict[str, str] = {
    "size": "_size",
    "limit_price": "_limit_price",
    "stop_price": "_stop_price",
    "sl_price": "_sl_price",
    "tp_price": "_tp_price",
    "parent_trade": "_parent_trade",
    "tag": "_tag",
}


class Order:
    """
    Pending order owned by a Broker.

    Positive size is long, negative is short. A magnitude below 1 is a fraction of
    available margin, anything else is a whole unit count. Orders with a parent trade
    are contingent: they only ever reduce that trade.
    """

    def __init__(
        self,
        broker: "Broker",
        size: float,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        sl_price: Optional[float] = None,
        tp_price: Optional[float] = None,
        parent_trade: Optional["Trade"] = None,
        tag: Any = None,
    ):
        self._broker = broker
        self._size = _checked_size(size)
        self._limit_price = limit_price
        self._stop_price = stop_price
        self._sl_price = sl_price
        self._tp_price = tp_price
        self._parent_trade = parent_trade
        self._tag = tag

    def __repr__(self) -> str:
        params = (
            ("size", self._size),
            ("limit", self._limit_price),
            ("stop", self._stop_price),
            ("sl", self._sl_price),
            ("tp", self._tp_price),
            ("contingent", self.is_contingent),
            ("tag", self._tag),
        )
        fields = ", ".join(f"{name}={value}" for name, value in params if value is not None)
        return f"<Order {fields}>"

    def cancel(self) -> None:
        """Remove the order from its broker; a no-op if already gone."""
        orders = self._broker.orders
        if self in orders:
            orders.remove(self)
        trade = self._parent_trade
        if trade is not None:
            if trade.sl_order is self:
                trade.replace(sl_order=None)
            elif trade.tp_order is self:
                trade.replace(tp_order=None)

    def replace(self, **fields: Any) -> "Order":
        """Set exactly the given fields and return self; omitted fields are kept."""
        unknown = sorted(set(fields) - set(_FIELDS))
        if unknown:
            raise ValueError(f"Unknown order fields: {unknown}")
        if "size" in fields:
            fields["size"] = _checked_size(fields["size"])
        for name, value in fields.items():
            setattr(self, _FIELDS[name], value)
        return self

    @property
    def size(self) -> float:
        return self._size

    @property
    def limit(self) -> Optional[float]:
        return self._limit_price

    @property
    def stop(self) -> Optional[float]:
        return self._stop_price

    @property
    def sl(self) -> Optional[float]:
        return self._sl_price

    @property
    def tp(self) -> Optional[float]:
        return self._tp_price

    @property
    def parent_trade(self) -> Optional["Trade"]:
        return self._parent_trade

    @property
    def tag(self) -> Any:
        return self._tag

    @property
    def is_long(self) -> bool:
        return self._size > 0

    @property
    def is_short(self) -> bool:
        return self._size < 0

    @property
    def is_contingent(self) -> bool:
        return self._parent_trade is not None


def _checked_size(size: float) -> float:
    if size != size or size == 0:
        raise ValueError(f"Order size must be a non-zero number, got {size!r}")
    return size
