"""Strategy base class, per-bar context and strategy loading."""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional

import numpy as np
import pandas as pd

from .bars import BarFrame

if TYPE_CHECKING:
    from .broker import Broker
    from .order import Order
    from .position import Position
    from .trade import Trade

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Context:
    """What a strategy sees at bar `index`."""

    index: int
    data: dict[str, Any]
    indicators: dict[str, Any]
    signals: dict[str, Any]
    prev: Optional["Context"] = None


def _validated_size(size: float) -> float:
    if not (size > 0 and (size < 1 or round(size) == size)):
        raise ValueError(
            f"size must be a positive fraction of equity, or a positive whole number of units, got {size!r}"
        )
    return size


def _as_list(values: Any) -> list[Any]:
    if isinstance(values, pd.Series):
        values = values.to_numpy()
    if isinstance(values, np.ndarray):
        return [None if pd.isna(value) else value.item() if hasattr(value, "item") else value for value in values]
    return list(values)


class Strategy(ABC):
    """
    Base class for trading policies.

    Subclasses declare default `params`, compute indicators and signals in `init()`
    and place orders from `next(context)`, which runs once per bar.
    """

    params: dict[str, Any] = {}

    def __init__(self, broker: "Broker", data: BarFrame, params: Optional[dict[str, Any]] = None):
        overrides = dict(params or {})
        defaults = dict(type(self).params)
        unknown = sorted(set(overrides) - set(defaults))
        if unknown:
            raise ValueError(f"{type(self).__name__} has no parameters named {unknown}")
        self._broker = broker
        self._data = data
        self.params = {**defaults, **overrides}
        self._indicators: dict[str, list[Any]] = {}
        self._signals: dict[str, list[Any]] = {}

    def __getattr__(self, name: str) -> Any:
        params = self.__dict__.get("params") or {}
        if name in params:
            return params[name]
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def __str__(self) -> str:
        if self.params:
            joined = ",".join(f"{key}={value}" for key, value in self.params.items())
            return f"{type(self).__name__}({joined})"
        return type(self).__name__

    @abstractmethod
    def init(self) -> None:
        """Declare indicators and signals."""

    @abstractmethod
    def next(self, context: Context) -> None:
        """Make trading decisions for the current bar."""

    @property
    def data(self) -> BarFrame:
        return self._data

    @property
    def history(self) -> BarFrame:
        """Bars up to and including the most recently processed one."""
        return self._data.history(self._broker.bar_index)

    @property
    def equity(self) -> float:
        return self._broker.equity

    @property
    def position(self) -> "Position":
        return self._broker.position

    @property
    def orders(self) -> list["Order"]:
        return self._broker.orders

    @property
    def trades(self) -> list["Trade"]:
        return self._broker.trades

    @property
    def closed_trades(self) -> list["Trade"]:
        return self._broker.closed_trades

    @property
    def indicators(self) -> dict[str, list[Any]]:
        return self._indicators

    @property
    def signals(self) -> dict[str, list[Any]]:
        return self._signals

    def buy(
        self,
        size: float = 0.9999,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        sl_price: Optional[float] = None,
        tp_price: Optional[float] = None,
        tag: Any = None,
    ) -> "Order":
        """Place a long order; a size below 1 is a fraction of available margin."""
        return self._broker.new_order(
            _validated_size(size),
            limit_price=limit_price,
            stop_price=stop_price,
            sl_price=sl_price,
            tp_price=tp_price,
            tag=tag,
        )

    def sell(
        self,
        size: float = 0.9999,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        sl_price: Optional[float] = None,
        tp_price: Optional[float] = None,
        tag: Any = None,
    ) -> "Order":
        """Place a short order; a size below 1 is a fraction of available margin."""
        return self._broker.new_order(
            -_validated_size(size),
            limit_price=limit_price,
            stop_price=stop_price,
            sl_price=sl_price,
            tp_price=tp_price,
            tag=tag,
        )

    def add_indicator(self, name: str, values: Any) -> None:
        self._indicators[name] = self._aligned(name, values)

    def get_indicator(self, name: str) -> list[Any]:
        return self._indicators[name]

    def add_signal(self, name: str, values: Any) -> None:
        self._signals[name] = self._aligned(name, values)

    def get_signal(self, name: str) -> list[Any]:
        return self._signals[name]

    def _aligned(self, name: str, values: Any) -> list[Any]:
        aligned = _as_list(values)
        rows = len(self._data)
        if len(aligned) > rows:
            raise ValueError(f"Series {name!r} has {len(aligned)} values for {rows} bars")
        return [None] * (rows - len(aligned)) + aligned


def iter_contexts(strategy: Strategy) -> Iterator[Context]:
    """Yield one Context per bar, each linked to the previous one."""
    data = strategy.data
    context: Optional[Context] = None
    for i in range(len(data)):
        context = Context(
            index=i,
            data=data.bar(i),
            indicators={name: values[i] for name, values in strategy.indicators.items()},
            signals={name: values[i] for name, values in strategy.signals.items()},
            prev=context,
        )
        yield context


def _sanitize_module_name(path: Path) -> str:
    digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()
    return f"_barsim_strategy_{digest}"


def load_strategy_class(spec: str, base_dir: Path | None = None) -> type[Strategy]:
    """Import `path/to/file.py:ClassName` or `package.module.ClassName`."""
    raw_spec = str(spec or "").strip()
    if not raw_spec:
        raise ValueError("strategy_class is required")

    if ":" in raw_spec:
        target, class_name = raw_spec.rsplit(":", 1)
    elif "." in raw_spec:
        target, class_name = raw_spec.rsplit(".", 1)
    else:
        raise ValueError(f"Invalid strategy_class spec: {spec}")

    target = target.strip()
    class_name = class_name.strip()
    if not target or not class_name:
        raise ValueError(f"Invalid strategy_class spec: {spec}")

    is_file_ref = target.endswith(".py") or "\\" in target or "/" in target
    if is_file_ref:
        file_path = Path(target)
        if not file_path.is_absolute():
            file_path = ((base_dir or Path.cwd()) / file_path).resolve()
        if not file_path.exists():
            raise FileNotFoundError(f"Strategy module file not found: {file_path}")
        module_name = _sanitize_module_name(file_path)
        module_spec = importlib.util.spec_from_file_location(module_name, file_path)
        if module_spec is None or module_spec.loader is None:
            raise ImportError(f"Unable to import strategy module from {file_path}")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
    else:
        module = importlib.import_module(target)

    try:
        strategy_cls = getattr(module, class_name)
    except AttributeError as exc:
        raise ImportError(f"Strategy class {class_name} not found in {target}") from exc

    if not (isinstance(strategy_cls, type) and issubclass(strategy_cls, Strategy)):
        raise TypeError(f"{class_name} must be a subclass of barsim.Strategy")
    logger.debug("Loaded strategy %s from %s", class_name, target)
    return strategy_cls
