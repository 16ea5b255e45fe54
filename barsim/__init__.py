"""Bar-replay backtesting: broker simulation, strategies and performance statistics."""

from .bars import BarFrame, load_bars, read_bars_csv
from .broker import Broker
from .models import (
    EQUITY_CURVE_COLUMNS,
    RESULT_KEYS,
    TRADE_LOG_COLUMNS,
    BacktestConfig,
    OptimizeConfig,
    RunConfig,
)
from .order import Order
from .position import Position
from .reporting import format_results, write_backtest_artifacts
from .runtime import Backtest, OptimizationResult, RunArtifacts, run_from_config
from .stats import StatsResult, compute_stats
from .strategy import Context, Strategy, load_strategy_class
from .trade import Trade

__all__ = [
    "BarFrame",
    "load_bars",
    "read_bars_csv",
    "Broker",
    "Order",
    "Trade",
    "Position",
    "Strategy",
    "Context",
    "load_strategy_class",
    "BacktestConfig",
    "OptimizeConfig",
    "RunConfig",
    "RESULT_KEYS",
    "EQUITY_CURVE_COLUMNS",
    "TRADE_LOG_COLUMNS",
    "Backtest",
    "OptimizationResult",
    "RunArtifacts",
    "run_from_config",
    "StatsResult",
    "compute_stats",
    "format_results",
    "write_backtest_artifacts",
]
