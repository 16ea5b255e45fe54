"""Performance statistics over a finished simulation: equity curve, trade log and results."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

import numpy as np
import pandas as pd

from core.numeric import DEFAULT_DIGITS, DEFAULT_PRECISION, format_value

from .bars import BarFrame
from .models import EQUITY_CURVE_COLUMNS, RESULT_KEYS, TRADE_LOG_COLUMNS, iso_utc

if TYPE_CHECKING:
    from .trade import Trade

logger = logging.getLogger(__name__)

_ONE_DAY = pd.Timedelta(days=1)
_DRAWDOWN_RUN_COLUMNS = ["start", "end", "duration_days", "peak"]


@dataclass
class StatsResult:
    """Output of `compute_stats`."""

    equity_curve: pd.DataFrame
    trade_log: pd.DataFrame
    results: pd.Series

    def __getitem__(self, key: str) -> Any:
        return self.results[key]

    def to_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {}
        for key, value in self.results.items():
            if isinstance(value, pd.Timestamp):
                summary[key] = iso_utc(value)
            elif isinstance(value, (float, np.floating)) and not math.isfinite(value):
                summary[key] = None
            elif isinstance(value, np.generic):
                summary[key] = value.item()
            else:
                summary[key] = value
        return summary


def geometric_mean(returns: pd.Series) -> float:
    """Compounded mean return; 0 when any period loses everything, NaN when empty."""
    growth = returns.fillna(0).astype(float) + 1
    if len(growth) == 0:
        return math.nan
    if (growth <= 0).any():
        return 0.0
    return float(np.exp(np.log(growth).mean()) - 1)


def annual_trading_days(index: pd.DatetimeIndex) -> int:
    """365 for calendar-day assets (weekends present), otherwise 252."""
    if len(index) == 0:
        return 252
    weekend_share = float((index.dayofweek >= 5).mean())
    return 365 if weekend_share > 2 / 7 * 0.6 else 252


def day_returns(equity: pd.Series) -> pd.Series:
    """Simple returns between calendar days, using the last equity of each day; the first day is 0."""
    index = pd.DatetimeIndex(equity.index)
    by_day = equity.groupby(index.normalize()).last()
    returns = by_day / by_day.shift(1) - 1
    if len(returns):
        returns.iloc[0] = 0.0
    return returns


def compute_drawdown_runs(drawdown: pd.Series) -> pd.DataFrame:
    """
    Contiguous drawdown runs.

    A run starts at a bar with zero drawdown and ends at the next zero-drawdown bar, or at
    the last bar. Runs whose end directly follows their start are ignored.
    """
    values = drawdown.to_numpy(dtype=float)
    index = pd.DatetimeIndex(drawdown.index)
    if values.size == 0:
        return pd.DataFrame(columns=_DRAWDOWN_RUN_COLUMNS)

    boundaries = np.unique(np.append(np.flatnonzero(values == 0), values.size - 1))
    rows: list[dict[str, Any]] = []
    for start, end in zip(boundaries[:-1], boundaries[1:]):
        if end <= start + 1:
            continue
        rows.append(
            {
                "start": int(start),
                "end": int(end),
                "duration_days": (index[end] - index[start]) / _ONE_DAY,
                "peak": float(np.nanmax(values[start:end + 1])),
            }
        )
    return pd.DataFrame(rows, columns=_DRAWDOWN_RUN_COLUMNS)


def _drawdown_durations(drawdown: pd.Series, runs: pd.DataFrame) -> np.ndarray:
    values = drawdown.to_numpy(dtype=float)
    index = pd.DatetimeIndex(drawdown.index)
    durations = np.full(values.size, np.nan)
    for start, end in zip(runs["start"], runs["end"]):
        span = slice(start + 1, end + 1)
        elapsed = np.asarray((index[span] - index[start]) / _ONE_DAY, dtype=float)
        durations[span] = np.where(values[span] > 0, elapsed, np.nan)
    return durations


def _trade_log(trades: Iterable["Trade"], precision: int, digits: int) -> pd.DataFrame:
    records = [
        {
            "size": trade.size,
            "entry_bar": trade.entry_bar,
            "exit_bar": trade.exit_bar,
            "entry_price": trade.entry_price,
            "exit_price": trade.exit_price,
            "pnl": trade.pl,
            "return_pct": trade.pl_pct * 100,
            "entry_time": trade.entry_time,
            "exit_time": trade.exit_time,
            "tag": trade.tag,
            "duration_days": (trade.exit_time - trade.entry_time) / _ONE_DAY,
        }
        for trade in trades
    ]
    log = pd.DataFrame(records, columns=list(TRADE_LOG_COLUMNS))
    for column in ("entry_price", "exit_price", "pnl", "return_pct", "duration_days"):
        log[column] = log[column].astype(float).map(lambda value: format_value(value, precision, digits))
    return log


def _pct_change(first: float, last: float) -> float:
    if not first:
        return math.nan
    return (last - first) / first * 100


def _ratio(numerator: float, denominator: float) -> float:
    if not denominator or math.isnan(denominator):
        return math.nan
    return numerator / denominator


def _ceil(value: float) -> float:
    return math.nan if math.isnan(value) else float(math.ceil(value))


def compute_stats(
    bars: BarFrame,
    equities: np.ndarray | pd.Series,
    closed_trades: Iterable["Trade"],
    *,
    strategy: str = "",
    risk_free_rate: float = 0.0,
    precision: int = DEFAULT_PRECISION,
    digits: int = DEFAULT_DIGITS,
) -> StatsResult:
    """Derive the equity curve, the trade log and the results table from a finished run."""
    if not -1 < risk_free_rate < 1:
        raise ValueError(f"risk_free_rate should be a fraction in (-1, 1), got {risk_free_rate!r}")
    index = bars.index
    equity = pd.Series(np.asarray(equities, dtype=float), index=index, name="equity")
    if len(equity) == 0:
        raise ValueError("Cannot compute statistics for an empty bar series")

    drawdown = 1 - equity / equity.cummax()
    runs = compute_drawdown_runs(drawdown)
    equity_curve = pd.DataFrame(
        {
            "equity": equity,
            "drawdown": drawdown,
            "drawdown_duration_days": _drawdown_durations(drawdown, runs),
        },
        index=index,
        columns=list(EQUITY_CURVE_COLUMNS),
    )

    trade_log = _trade_log(closed_trades, precision, digits)
    pl = trade_log["pnl"].astype(float)
    returns = trade_log["return_pct"].astype(float) / 100
    durations = trade_log["duration_days"].astype(float)
    n_trades = len(trade_log)

    s: dict[str, Any] = {}
    s["strategy"] = strategy
    s["start"] = index[0]
    s["end"] = index[-1]
    s["duration_days"] = (index[-1] - index[0]) / _ONE_DAY

    have_position = np.zeros(len(index), dtype=bool)
    for entry_bar, exit_bar in zip(trade_log["entry_bar"], trade_log["exit_bar"]):
        have_position[int(entry_bar):int(exit_bar) + 1] = True
    s["exposure_time_pct"] = float(have_position.mean() * 100)

    s["equity_final"] = float(equity.iloc[-1])
    s["equity_peak"] = float(equity.max())
    s["return_pct"] = _pct_change(float(equity.iloc[0]), float(equity.iloc[-1]))
    s["buy_and_hold_return_pct"] = _pct_change(float(bars.close[0]), float(bars.close[-1]))

    daily = day_returns(equity)
    gmean_day_return = geometric_mean(daily)
    annual_days = annual_trading_days(index)
    annualized_return = (1 + gmean_day_return) ** annual_days - 1
    day_variance = float(daily.var())
    variance_term = (day_variance + (1 + gmean_day_return) ** 2) ** annual_days - (1 + gmean_day_return) ** (
        2 * annual_days
    )
    volatility = math.sqrt(max(variance_term, 0.0)) * 100 if not math.isnan(variance_term) else math.nan
    downside = math.sqrt(float((daily.clip(upper=0) ** 2).mean())) * math.sqrt(annual_days)
    max_drawdown = float(drawdown.max())

    s["return_ann_pct"] = annualized_return * 100
    s["volatility_ann_pct"] = volatility
    s["sharpe_ratio"] = _ratio(annualized_return * 100 - risk_free_rate, volatility)
    s["sortino_ratio"] = _ratio(annualized_return - risk_free_rate, downside)
    s["calmar_ratio"] = _ratio(annualized_return, max_drawdown)

    s["max_drawdown_pct"] = -max_drawdown * 100
    s["avg_drawdown_pct"] = -float(runs["peak"].mean()) * 100 if len(runs) else math.nan
    s["max_drawdown_duration_days"] = _ceil(float(runs["duration_days"].max())) if len(runs) else math.nan
    s["avg_drawdown_duration_days"] = _ceil(float(runs["duration_days"].mean())) if len(runs) else math.nan

    s["trades"] = n_trades
    if n_trades:
        gross_profit = float(pl[pl > 0].sum())
        gross_loss = abs(float(pl[pl < 0].sum()))
        s["win_rate_pct"] = float((pl > 0).mean() * 100)
        s["best_trade_pct"] = float(returns.max() * 100)
        s["worst_trade_pct"] = float(returns.min() * 100)
        s["avg_trade_pct"] = geometric_mean(returns) * 100
        s["max_trade_duration_days"] = _ceil(float(durations.max()))
        s["avg_trade_duration_days"] = _ceil(float(durations.mean()))
        if gross_loss:
            s["profit_factor"] = gross_profit / gross_loss
        else:
            s["profit_factor"] = math.inf if gross_profit else math.nan
        s["expectancy_pct"] = float(returns.mean() * 100)
        s["sqn"] = _ratio(math.sqrt(n_trades) * float(pl.mean()), float(pl.std()))
    else:
        for key in RESULT_KEYS[RESULT_KEYS.index("win_rate_pct"):]:
            s[key] = math.nan

    results = pd.Series(
        {key: format_value(s[key], precision, digits) for key in RESULT_KEYS},
        dtype=object,
        name=strategy or None,
    )
    logger.debug("Computed stats for %s over %d bars and %d trades", strategy or "run", len(index), n_trades)
    return StatsResult(equity_curve=equity_curve, trade_log=trade_log, results=results)
