"""Configuration models and table schemas for simulator runs."""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional


REQUIRED_BAR_COLUMNS: tuple[str, ...] = (
    "date",
    "open",
    "high",
    "low",
    "close",
)

BAR_PRICE_COLUMNS: tuple[str, ...] = (
    "open",
    "high",
    "low",
    "close",
)

EQUITY_CURVE_COLUMNS: tuple[str, ...] = (
    "equity",
    "drawdown",
    "drawdown_duration_days",
)

TRADE_LOG_COLUMNS: tuple[str, ...] = (
    "size",
    "entry_bar",
    "exit_bar",
    "entry_price",
    "exit_price",
    "pnl",
    "return_pct",
    "entry_time",
    "exit_time",
    "tag",
    "duration_days",
)

RESULT_KEYS: tuple[str, ...] = (
    "strategy",
    "start",
    "end",
    "duration_days",
    "exposure_time_pct",
    "equity_final",
    "equity_peak",
    "return_pct",
    "buy_and_hold_return_pct",
    "return_ann_pct",
    "volatility_ann_pct",
    "sharpe_ratio",
    "sortino_ratio",
    "calmar_ratio",
    "max_drawdown_pct",
    "avg_drawdown_pct",
    "max_drawdown_duration_days",
    "avg_drawdown_duration_days",
    "trades",
    "win_rate_pct",
    "best_trade_pct",
    "worst_trade_pct",
    "avg_trade_pct",
    "max_trade_duration_days",
    "avg_trade_duration_days",
    "profit_factor",
    "expectancy_pct",
    "sqn",
)

DEFAULT_METRIC = "equity_final"


def iso_utc(value: Any) -> Optional[str]:
    """Serialize datetime-like values to ISO8601 UTC string when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat().replace("+00:00", "Z")
        except TypeError:
            return str(value)
    return str(value)


def validate_broker_settings(cash: float, commission: float, margin: float) -> None:
    """Raise ValueError when account settings are outside the supported ranges."""
    try:
        cash_value = float(cash)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"cash should be a positive number, got {cash!r}") from exc
    if not (math.isfinite(cash_value) and cash_value > 0):
        raise ValueError(f"cash should be a positive number, got {cash!r}")
    if not -0.1 <= commission < 0.1:
        raise ValueError(
            f"commission should be between -10% (market-maker rebates) and +10% (fees), got {commission!r}"
        )
    if not 0 < margin <= 1:
        raise ValueError(f"margin should be between 0 and 1, got {margin!r}")


@dataclass
class BacktestConfig:
    """Account and simulation settings for a single run."""

    cash: float = 10_000.0
    commission: float = 0.0
    margin: float = 1.0
    trade_on_close: bool = False
    hedging: bool = False
    exclusive_orders: bool = False
    risk_free_rate: float = 0.0

    def __post_init__(self) -> None:
        self.cash = float(self.cash)
        self.commission = float(self.commission)
        self.margin = float(self.margin)
        self.trade_on_close = bool(self.trade_on_close)
        self.hedging = bool(self.hedging)
        self.exclusive_orders = bool(self.exclusive_orders)
        self.risk_free_rate = float(self.risk_free_rate)
        validate_broker_settings(self.cash, self.commission, self.margin)
        if not -1 < self.risk_free_rate < 1:
            raise ValueError(f"risk_free_rate should be a fraction in (-1, 1), got {self.risk_free_rate!r}")

    @property
    def leverage(self) -> float:
        return 1.0 / self.margin

    def broker_kwargs(self) -> dict[str, Any]:
        return {
            "cash": self.cash,
            "commission": self.commission,
            "margin": self.margin,
            "trade_on_close": self.trade_on_close,
            "hedging": self.hedging,
            "exclusive_orders": self.exclusive_orders,
        }

    def replace(self, **overrides: Any) -> "BacktestConfig":
        unknown = sorted(set(overrides) - set(self.to_dict()))
        if unknown:
            raise ValueError(f"Unknown backtest settings: {unknown}")
        payload = self.to_dict()
        payload.update(overrides)
        return BacktestConfig(**payload)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "BacktestConfig":
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValueError("backtest settings must be a JSON object")
        return cls().replace(**payload)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OptimizeConfig:
    """Parameter grid and selection metric for an optimization run."""

    params: dict[str, list[Any]]
    maximize: str = DEFAULT_METRIC
    max_workers: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "OptimizeConfig":
        if not isinstance(payload, dict):
            raise ValueError("optimize must be a JSON object")
        grid = payload.get("params")
        if not isinstance(grid, dict) or not grid:
            raise ValueError("optimize.params must be a non-empty mapping of name to candidate list")
        params: dict[str, list[Any]] = {}
        for name, values in grid.items():
            if not isinstance(values, list) or not values:
                raise ValueError(f"optimize.params.{name} must be a non-empty list")
            params[str(name)] = list(values)
        maximize = str(payload.get("maximize") or DEFAULT_METRIC)
        if maximize not in RESULT_KEYS:
            raise ValueError(f"Unknown optimize metric: {maximize}")
        max_workers = payload.get("max_workers")
        return cls(
            params=params,
            maximize=maximize,
            max_workers=None if max_workers in (None, "") else int(max_workers),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "params": {name: list(values) for name, values in self.params.items()},
            "maximize": self.maximize,
            "max_workers": self.max_workers,
        }


@dataclass
class RunConfig:
    """JSON run file: data, strategy, account settings and outputs."""

    data_csv: Path
    report_dir: Path
    strategy_class: str
    params: dict[str, Any] = field(default_factory=dict)
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    optimize: Optional[OptimizeConfig] = None
    _config_dir: Optional[Path] = None

    @classmethod
    def from_dict(
        cls,
        payload: dict[str, Any],
        *,
        config_dir: Path | None = None,
    ) -> "RunConfig":
        if not isinstance(payload, dict):
            raise ValueError("Run config must be a JSON object")

        data_csv = str(payload.get("data_csv") or "").strip()
        if not data_csv:
            raise ValueError("data_csv is required")
        report_dir = str(payload.get("report_dir") or "").strip()
        if not report_dir:
            raise ValueError("report_dir is required")
        strategy_class = str(payload.get("strategy_class") or "").strip()
        if not strategy_class:
            raise ValueError("strategy_class is required")

        params = payload.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("params must be a JSON object")

        optimize_raw = payload.get("optimize")
        return cls(
            data_csv=Path(data_csv),
            report_dir=Path(report_dir),
            strategy_class=strategy_class,
            params=dict(params),
            backtest=BacktestConfig.from_dict(payload.get("backtest")),
            optimize=None if optimize_raw is None else OptimizeConfig.from_dict(optimize_raw),
            _config_dir=config_dir,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "RunConfig":
        config_path = Path(path)
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        config = cls.from_dict(payload, config_dir=config_path.parent)
        if not config.data_csv.is_absolute():
            config.data_csv = (config_path.parent / config.data_csv).resolve()
        if not config.report_dir.is_absolute():
            config.report_dir = (config_path.parent / config.report_dir).resolve()
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_csv": str(self.data_csv),
            "report_dir": str(self.report_dir),
            "strategy_class": self.strategy_class,
            "params": dict(self.params),
            "backtest": self.backtest.to_dict(),
            "optimize": None if self.optimize is None else self.optimize.to_dict(),
        }
