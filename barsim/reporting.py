"""Report artifacts for finished runs: CSV tables, JSON summary and a markdown report."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import pandas as pd

from .models import RunConfig, iso_utc

if TYPE_CHECKING:
    from .stats import StatsResult


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return iso_utc(value)
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    if hasattr(value, "item"):
        return value.item()
    return str(value)


def format_results(results: pd.Series) -> str:
    """Aligned `key  value` lines for log output."""
    width = max((len(str(key)) for key in results.index), default=0)
    lines: list[str] = []
    for key, value in results.items():
        if isinstance(value, pd.Timestamp):
            rendered = iso_utc(value)
        elif isinstance(value, float):
            rendered = f"{value:.6g}"
        else:
            rendered = str(value)
        lines.append(f"{str(key):<{width}}  {rendered}")
    return "\n".join(lines)


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:.6g}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def _write_markdown_report(
    report_path: Path,
    summary: dict[str, Any],
    trade_log: pd.DataFrame,
    optimization: Optional[pd.DataFrame],
) -> None:
    sections: list[str] = []
    sections.append(f"# Backtest Report: {summary.get('strategy') or 'strategy'}")
    sections.append("")
    sections.append(f"- Start: `{summary.get('start')}`")
    sections.append(f"- End: `{summary.get('end')}`")
    sections.append(f"- Trades: `{summary.get('trades')}`")
    sections.append("")
    sections.append("## Results")
    sections.append("")
    sections.append(
        _md_table([{"metric": key, "value": value} for key, value in summary.items()], ["metric", "value"]).rstrip()
    )
    sections.append("")

    sections.append("## Trades")
    sections.append("")
    trade_rows = [
        {
            "size": row["size"],
            "entry_time": iso_utc(row["entry_time"]),
            "exit_time": iso_utc(row["exit_time"]),
            "entry_price": row["entry_price"],
            "exit_price": row["exit_price"],
            "pnl": row["pnl"],
            "return_pct": row["return_pct"],
        }
        for row in trade_log.to_dict(orient="records")
    ]
    sections.append(
        _md_table(
            trade_rows,
            ["size", "entry_time", "exit_time", "entry_price", "exit_price", "pnl", "return_pct"],
        ).rstrip()
    )
    sections.append("")

    if optimization is not None:
        sections.append("## Optimization")
        sections.append("")
        sections.append(
            _md_table(optimization.to_dict(orient="records"), [str(col) for col in optimization.columns]).rstrip()
        )
        sections.append("")

    report_path.write_text("\n".join(sections), encoding="utf-8")


def write_backtest_artifacts(
    stats: "StatsResult",
    report_dir: str | Path,
    config: Optional[RunConfig] = None,
    optimization: Optional[pd.DataFrame] = None,
) -> dict[str, Any]:
    """Write equity curve, trade log, results summary and report files into `report_dir`."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    summary = stats.to_summary()

    trades_out = stats.trade_log.copy()
    for col in ("entry_time", "exit_time"):
        trades_out[col] = pd.to_datetime(trades_out[col], utc=True).dt.strftime("%Y-%m-%dT%H:%M:%SZ")

    equity_path = out_dir / "equity_curve.csv"
    trades_path = out_dir / "trades.csv"
    results_path = out_dir / "results.json"
    report_path = out_dir / "report.md"

    stats.equity_curve.to_csv(equity_path, index_label="date")
    trades_out.to_csv(trades_path, index=False)
    results_path.write_text(json.dumps(summary, indent=2, default=_json_default), encoding="utf-8")
    _write_markdown_report(report_path, summary, stats.trade_log, optimization)

    paths = {
        "report_dir": str(out_dir),
        "equity_curve_csv": str(equity_path),
        "trades_csv": str(trades_path),
        "results_json": str(results_path),
        "report_md": str(report_path),
    }
    if config is not None:
        run_cfg_path = out_dir / "run_config.json"
        run_cfg_path.write_text(json.dumps(config.to_dict(), indent=2, default=_json_default), encoding="utf-8")
        paths["run_config_json"] = str(run_cfg_path)
    if optimization is not None:
        optimization_path = out_dir / "optimization.csv"
        optimization.to_csv(optimization_path, index=False)
        paths["optimization_csv"] = str(optimization_path)

    return {"summary": summary, "paths": paths}
