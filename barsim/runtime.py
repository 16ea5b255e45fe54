"""Simulation driver: runs a strategy over bars, optimizes parameter grids, and runs from config files."""

from __future__ import annotations

import itertools
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import numpy as np
import pandas as pd

from .bars import BarFrame, load_bars, read_bars_csv
from .broker import Broker
from .models import DEFAULT_METRIC, RESULT_KEYS, BacktestConfig, RunConfig
from .reporting import write_backtest_artifacts
from .stats import StatsResult, compute_stats
from .strategy import Strategy, iter_contexts, load_strategy_class

logger = logging.getLogger(__name__)

Metric = Union[str, Callable[[pd.Series], float]]


@dataclass
class OptimizationResult:
    """Best parameter combination and the per-combination metric table."""

    best_params: dict[str, Any]
    best_stats: StatsResult
    results: pd.DataFrame
    metric: str


@dataclass
class RunArtifacts:
    stats: StatsResult
    optimization: Optional[OptimizationResult]
    paths: dict[str, str]


class Backtest:
    """
    Replays bars through a strategy on a fresh broker per run.

    Every run builds its own Broker, Strategy and trade graph, so runs with different
    parameters are independent and can execute concurrently.
    """

    def __init__(
        self,
        data: Any,
        strategy_cls: type[Strategy],
        config: Optional[BacktestConfig] = None,
        **overrides: Any,
    ):
        if not (isinstance(strategy_cls, type) and issubclass(strategy_cls, Strategy)):
            raise TypeError("strategy_cls must be a subclass of barsim.Strategy")
        self._data: BarFrame = load_bars(data)
        self._strategy_cls = strategy_cls
        base = config or BacktestConfig()
        self._config = base.replace(**overrides) if overrides else base

        if (self._data.close > self._config.cash).any():
            logger.warning(
                "Some prices are larger than initial cash value (%s); consider raising cash "
                "or trading fractional units",
                self._config.cash,
            )

    @property
    def data(self) -> BarFrame:
        return self._data

    @property
    def config(self) -> BacktestConfig:
        return self._config

    def run(self, **params: Any) -> StatsResult:
        """Run the strategy once with `params` overriding its defaults."""
        broker = Broker(self._data, **self._config.broker_kwargs())
        strategy = self._strategy_cls(broker, self._data, params)
        strategy.init()

        for context in iter_contexts(strategy):
            broker.next()
            strategy.next(context)

        for trade in list(broker.trades):
            trade.close()
        broker.last()

        stats = compute_stats(
            self._data,
            broker.equities,
            broker.closed_trades,
            strategy=str(strategy),
            risk_free_rate=self._config.risk_free_rate,
        )
        logger.debug(
            "Run %s finished: equity %.2f, %d closed trades",
            strategy,
            stats.results["equity_final"],
            len(broker.closed_trades),
        )
        return stats

    def optimize(
        self,
        grid: dict[str, list[Any]],
        maximize: Metric = DEFAULT_METRIC,
        max_workers: Optional[int] = None,
    ) -> OptimizationResult:
        """
        Run every combination of `grid` and return the one that maximizes `maximize`.

        `maximize` is a results key or a callable taking the results Series. NaN scores
        never win; ties go to the combination that comes first in grid order.
        Runs share a thread pool, so they overlap but get no CPU speedup under the GIL.
        """
        combos = _expand_grid(grid)
        metric_name, score = _resolve_metric(maximize)

        workers = max_workers if max_workers is not None else min(32, (os.cpu_count() or 1) + 4)
        workers = max(1, min(int(workers), len(combos)))
        logger.info("Optimizing %s over %d combinations with %d workers", self._strategy_cls.__name__, len(combos), workers)

        ordered_results: list[Optional[StatsResult]] = [None] * len(combos)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            future_map = {pool.submit(self.run, **params): idx for idx, params in enumerate(combos)}
            for future in as_completed(future_map):
                ordered_results[future_map[future]] = future.result()

        rows: list[dict[str, Any]] = []
        best_idx: Optional[int] = None
        best_value = -math.inf
        for idx, (params, stats) in enumerate(zip(combos, ordered_results)):
            assert stats is not None
            value = float(score(stats.results))
            rows.append({**params, metric_name: value})
            if not math.isnan(value) and (best_idx is None or value > best_value):
                best_idx, best_value = idx, value

        if best_idx is None:
            raise ValueError(f"No parameter combination produced a usable {metric_name!r} value")

        best_params = dict(combos[best_idx])
        logger.info("Best %s=%s with %s", metric_name, best_value, best_params)
        return OptimizationResult(
            best_params=best_params,
            best_stats=ordered_results[best_idx],
            results=pd.DataFrame(rows, columns=[*grid.keys(), metric_name]),
            metric=metric_name,
        )


def _expand_grid(grid: dict[str, list[Any]]) -> list[dict[str, Any]]:
    if not isinstance(grid, dict) or not grid:
        raise ValueError("Optimization grid must be a non-empty mapping of parameter name to candidates")
    for name, values in grid.items():
        if isinstance(values, (str, bytes)) or not hasattr(values, "__iter__"):
            raise ValueError(f"Candidates for {name!r} must be a list")
        if len(list(values)) == 0:
            raise ValueError(f"Candidates for {name!r} must not be empty")
    names = list(grid)
    return [dict(zip(names, values)) for values in itertools.product(*(list(grid[name]) for name in names))]


def _resolve_metric(maximize: Metric) -> tuple[str, Callable[[pd.Series], float]]:
    if callable(maximize):
        return getattr(maximize, "__name__", "score"), maximize
    if maximize not in RESULT_KEYS:
        raise ValueError(f"Unknown metric {maximize!r}; expected one of {list(RESULT_KEYS)}")
    key = str(maximize)

    def score(results: pd.Series) -> float:
        value = results[key]
        if isinstance(value, (int, float, np.number)) and not isinstance(value, bool):
            return float(value)
        raise ValueError(f"Metric {key!r} is not numeric")

    return key, score


def run_from_config(config: RunConfig, *, optimize: bool = False) -> RunArtifacts:
    """Load bars and strategy from a run config, run (or optimize) it, and write report artifacts."""
    if optimize and config.optimize is None:
        raise ValueError("optimize requested but the config has no optimize section")
    bars = read_bars_csv(config.data_csv)
    strategy_cls = load_strategy_class(config.strategy_class, base_dir=config._config_dir)
    backtest = Backtest(bars, strategy_cls, config.backtest)
    logger.info(
        "Loaded %d bars (%s .. %s) for %s",
        len(bars),
        bars.start_time_utc,
        bars.end_time_utc,
        strategy_cls.__name__,
    )

    optimization: Optional[OptimizationResult] = None
    if optimize and config.optimize is not None:
        fixed = {name: [value] for name, value in config.params.items() if name not in config.optimize.params}
        optimization = backtest.optimize(
            {**fixed, **config.optimize.params},
            maximize=config.optimize.maximize,
            max_workers=config.optimize.max_workers,
        )
        stats = optimization.best_stats
    else:
        stats = backtest.run(**config.params)

    written = write_backtest_artifacts(
        stats,
        report_dir=config.report_dir,
        config=config,
        optimization=None if optimization is None else optimization.results,
    )
    return RunArtifacts(stats=stats, optimization=optimization, paths=written["paths"])
