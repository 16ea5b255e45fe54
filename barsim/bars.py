"""OHLCV bar table with strict schema validation."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from .models import BAR_PRICE_COLUMNS, REQUIRED_BAR_COLUMNS, iso_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BarFrame:
    """Immutable columnar bar container consumed by the broker and strategies."""

    index: pd.DatetimeIndex
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray

    @property
    def rows(self) -> int:
        return int(self.close.size)

    def __len__(self) -> int:
        return self.rows

    @property
    def start_time_utc(self) -> str | None:
        if self.rows == 0:
            return None
        return iso_utc(self.index[0])

    @property
    def end_time_utc(self) -> str | None:
        if self.rows == 0:
            return None
        return iso_utc(self.index[-1])

    def bar(self, i: int) -> dict[str, Any]:
        return {
            "date": self.index[i],
            "open": float(self.open[i]),
            "high": float(self.high[i]),
            "low": float(self.low[i]),
            "close": float(self.close[i]),
            "volume": float(self.volume[i]),
        }

    def slice_by_index(self, start_idx: int, end_idx: int) -> BarFrame:
        start = max(0, int(start_idx))
        end = min(self.rows, int(end_idx))
        if end < start:
            end = start
        return BarFrame(
            index=self.index[start:end],
            open=self.open[start:end],
            high=self.high[start:end],
            low=self.low[start:end],
            close=self.close[start:end],
            volume=self.volume[start:end],
        )

    def history(self, i: int) -> BarFrame:
        """Bars visible at cursor `i` (inclusive)."""
        return self.slice_by_index(0, int(i) + 1)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "open": self.open,
                "high": self.high,
                "low": self.low,
                "close": self.close,
                "volume": self.volume,
            },
            index=self.index.rename("date"),
        )


def _readonly(values: np.ndarray) -> np.ndarray:
    values.setflags(write=False)
    return values


def _to_frame(data: Any) -> pd.DataFrame:
    if isinstance(data, pd.DataFrame):
        frame = data.copy()
        if not isinstance(frame.index, pd.RangeIndex) and "date" not in {str(c).lower() for c in frame.columns}:
            frame = frame.reset_index(names="date")
        return frame
    if isinstance(data, Mapping):
        return pd.DataFrame(dict(data))
    if isinstance(data, (list, tuple)):
        if any(not isinstance(row, Mapping) for row in data):
            raise ValueError("Bar rows must be mappings of column name to value")
        return pd.DataFrame(list(data))
    raise ValueError(f"Unsupported bar data type: {type(data).__name__}")


def _numeric_column(frame: pd.DataFrame, column: str) -> np.ndarray:
    values = pd.to_numeric(frame[column], errors="coerce")
    invalid = values.isna() & frame[column].notna()
    if invalid.any():
        bad = frame.loc[invalid, column].iloc[0]
        raise ValueError(f"Invalid numeric value in column {column!r}: {bad!r}")
    return values.to_numpy(dtype=np.float64)


def _stable_sort_and_dedupe(frame: BarFrame) -> BarFrame:
    if frame.rows <= 1:
        return frame

    time_ns = frame.index.asi8
    order = np.argsort(time_ns, kind="mergesort")
    sorted_ns = time_ns[order]
    keep = np.ones(frame.rows, dtype=bool)
    keep[:-1] = sorted_ns[:-1] != sorted_ns[1:]
    if not keep.all():
        logger.warning("Dropping %d bars with duplicate timestamps (last row wins)", int((~keep).sum()))
    selected = order[keep]
    if np.array_equal(selected, np.arange(frame.rows)):
        return frame

    return BarFrame(
        index=frame.index[selected],
        open=frame.open[selected],
        high=frame.high[selected],
        low=frame.low[selected],
        close=frame.close[selected],
        volume=frame.volume[selected],
    )


def load_bars(data: Any) -> BarFrame:
    """Validate bar rows and build a sorted BarFrame; volume is injected as NaN when absent."""
    if isinstance(data, BarFrame):
        return data

    frame = _to_frame(data)
    frame.columns = [str(column).strip().lower() for column in frame.columns]
    missing = [column for column in REQUIRED_BAR_COLUMNS if column not in frame.columns]
    if missing:
        raise ValueError(f"Bar schema validation failed: missing columns {missing}")
    if frame.empty:
        raise ValueError("Bar data has no rows")

    if "volume" not in frame.columns:
        frame["volume"] = np.nan

    try:
        index = pd.DatetimeIndex(pd.to_datetime(frame["date"], utc=True))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid date value in bar data: {exc}") from exc
    if index.isna().any():
        raise ValueError("Bar data contains missing dates")

    prices = {column: _numeric_column(frame, column) for column in BAR_PRICE_COLUMNS}
    for column, values in prices.items():
        if np.isnan(values).any():
            raise ValueError(f"Bar data contains missing values in column {column!r}")

    bars = BarFrame(
        index=index,
        open=prices["open"],
        high=prices["high"],
        low=prices["low"],
        close=prices["close"],
        volume=_numeric_column(frame, "volume"),
    )
    bars = _stable_sort_and_dedupe(bars)
    return BarFrame(
        index=bars.index,
        open=_readonly(np.array(bars.open)),
        high=_readonly(np.array(bars.high)),
        low=_readonly(np.array(bars.low)),
        close=_readonly(np.array(bars.close)),
        volume=_readonly(np.array(bars.volume)),
    )


def read_bars_csv(path: str | Path) -> BarFrame:
    """Read an OHLCV CSV with a date column."""
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Bar file not found: {csv_path}")
    frame = pd.read_csv(csv_path)
    logger.debug("Loaded %d raw rows from %s", len(frame), csv_path)
    return load_bars(frame)
