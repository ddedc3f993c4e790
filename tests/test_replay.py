import asyncio
import json

from backtest.metrics import compute_metrics
from backtest.report import render_report
from backtest.runner import run_replay
from jobs.app import main
from services.config_service import WatchlistItem


def _write_csv(path, closes):
    lines = ["timestamp,open,high,low,close,volume"]
    lines += [f"{1000 + i * 60},{c},{c},{c},{c},100" for i, c in enumerate(closes)]
    path.write_text("\n".join(lines) + "\n")
    return path


def test_replay_detects_breakout(tmp_path):
    csv_path = _write_csv(tmp_path / "spy.csv", [100.0] * 20 + [100.0, 150.0])
    item = WatchlistItem(id="w1", user_id="u1", symbol="SPY", vwap_enabled=False)

    signals = run_replay(str(csv_path), item)

    assert [s.signal_type for s in signals] == ["bb_breakout_up"]
    assert signals[0].price_at_signal == 150.0
    assert signals[0].bar_ts == 1000 + 21 * 60
    metrics = compute_metrics(signals)
    assert metrics.total_signals == 1
    assert metrics.by_type["bb_breakout_up"] == 1
    assert metrics.by_type["vwap_cross_down"] == 0
    report = render_report(metrics)
    assert "Total signals: 1" in report
    assert "bb_breakout_up: 1" in report
    assert "vwap_cross_down" not in report


def test_replay_command_prints_json(tmp_path, capsys):
    csv_path = _write_csv(tmp_path / "spy.csv", [100.0] * 20 + [100.0, 150.0])

    code = asyncio.run(main(["replay", str(csv_path), "--no-vwap"]))

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["metrics"]["total_signals"] == 1
    assert payload["signals"][0]["symbol"] == "SPY"


def test_pass_command_uses_env_settings(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))

    code = asyncio.run(main(["run-risk-check"]))

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["pass_name"] == "risk_check"
    assert payload["errored"] == []


def test_unknown_order_update_fails_cleanly(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))

    code = asyncio.run(main(["order-update", "missing", "filled", "--price", "10"]))

    assert code == 1
    assert "Unknown order" in json.loads(capsys.readouterr().out)["error"]


def test_replay_evaluates_first_full_window(tmp_path):
    csv_path = _write_csv(tmp_path / "spy.csv", [100.0, 100.0, 150.0])
    item = WatchlistItem(id="w1", user_id="u1", symbol="SPY", bb_period=3, bb_std_dev=0.5, vwap_enabled=False)

    signals = run_replay(str(csv_path), item)

    assert [s.signal_type for s in signals] == ["bb_breakout_up", "bb_mean_reversion_up"]
    assert all(s.bar_ts == 1000 + 2 * 60 for s in signals)


def test_modify_order_command_rejects_unknown_order(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))

    code = asyncio.run(main(["modify-order", "missing", "--stop-loss", "95"]))

    assert code == 1
    assert "Unknown order" in json.loads(capsys.readouterr().out)["error"]
