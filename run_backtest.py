"""CLI for running and optimizing bar-replay backtests from JSON run configs."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from barsim import RunConfig, format_results, run_from_config  # noqa: E402
from core.logging_setup import setup_logging  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bar-replay backtest runner")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--logs-dir", default=None, help="Directory for the rotating run log (default: ./logs)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one backtest from a JSON run config")
    run_parser.add_argument("--config", required=True, help="Path to the run JSON config")

    optimize_parser = subparsers.add_parser("optimize", help="Optimize strategy parameters over the config grid")
    optimize_parser.add_argument("--config", required=True, help="Path to the run JSON config with an optimize section")

    return parser.parse_args(argv)


def _run_config(args: argparse.Namespace, *, optimize: bool) -> int:
    logger = logging.getLogger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return 2

    try:
        config = RunConfig.from_path(config_path)
        artifacts = run_from_config(config, optimize=optimize)
    except (ValueError, FileNotFoundError, ImportError, TypeError) as exc:
        logger.error(str(exc))
        return 3

    if artifacts.optimization is not None:
        logger.info("Best params: %s", artifacts.optimization.best_params)
    logger.info("Results:\n%s", format_results(artifacts.stats.results))
    logger.info("Report dir: %s", artifacts.paths["report_dir"])
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "run":
        return _run_config(args, optimize=False)
    if args.command == "optimize":
        return _run_config(args, optimize=True)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level, logs_dir=args.logs_dir)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
