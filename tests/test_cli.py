import json
import logging
from pathlib import Path

import pandas as pd
import pytest

import run_backtest
from conftest import wave_bars
from core.logging_setup import teardown_logging

SMA_FILE = Path(__file__).resolve().parents[1] / "strategies" / "sma_cross" / "strategy.py"


@pytest.fixture(autouse=True)
def restore_root():
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield
    teardown_logging(root)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_path(tmp_path):
    pd.DataFrame(wave_bars(80)).to_csv(tmp_path / "bars.csv", index=False)
    payload = {
        "data_csv": "bars.csv",
        "report_dir": "reports",
        "strategy_class": f"{SMA_FILE}:SmaCross",
        "params": {"n1": 5, "n2": 15, "size": 10},
        "optimize": {"params": {"n1": [3, 5]}},
    }
    path = tmp_path / "run.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _main(*argv):
    with pytest.raises(SystemExit) as exc:
        run_backtest.main(list(argv))
    return exc.value.code


def test_run_command(config_path, tmp_path):
    code = _main("--logs-dir", str(tmp_path / "logs"), "run", "--config", str(config_path))
    assert code == 0
    assert (tmp_path / "reports" / "results.json").exists()
    assert not (tmp_path / "reports" / "optimization.csv").exists()


def test_optimize_command(config_path, tmp_path):
    code = _main("--logs-dir", str(tmp_path / "logs"), "optimize", "--config", str(config_path))
    assert code == 0
    assert (tmp_path / "reports" / "optimization.csv").exists()


def test_missing_config(tmp_path):
    code = _main("--logs-dir", str(tmp_path / "logs"), "run", "--config", str(tmp_path / "nope.json"))
    assert code == 2


def test_invalid_config(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"data_csv": "a.csv"}), encoding="utf-8")
    code = _main("--logs-dir", str(tmp_path / "logs"), "run", "--config", str(path))
    assert code == 3


def test_command_is_required():
    with pytest.raises(SystemExit) as exc:
        run_backtest.main([])
    assert exc.value.code == 2
