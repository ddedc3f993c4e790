from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from typing import Any, Sequence

from loguru import logger

from backtest.metrics import compute_metrics
from backtest.report import render_report
from backtest.runner import run_replay
from engine.core import TradingEngine
from engine.errors import EngineError
from services.config_service import EngineSettings, WatchlistItem
from services.orchestrator import EngineOrchestrator
from services.scheduler import wait_next_tick

PASSES = {
    "run-signal-scan": "run_signal_scan",
    "run-risk-check": "run_risk_check",
    "run-trailing-stop-update": "run_trailing_stop_update",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signal-autotrader")
    sub = parser.add_subparsers(dest="command", required=True)
    for name in PASSES:
        cmd = sub.add_parser(name)
        cmd.add_argument("--loop", action="store_true", help="repeat on SCAN_INTERVAL")

    close = sub.add_parser("close-position")
    close.add_argument("position_id")
    close.add_argument("--reason", default="manual")

    cancel = sub.add_parser("cancel-order")
    cancel.add_argument("order_id")

    modify = sub.add_parser("modify-order")
    modify.add_argument("order_id")
    modify.add_argument("--limit-price", type=float, default=None)
    modify.add_argument("--trailing-stop-percent", type=float, default=None)
    modify.add_argument("--stop-loss", type=float, default=None)
    modify.add_argument("--take-profit", type=float, default=None)

    update = sub.add_parser("order-update")
    update.add_argument("order_id")
    update.add_argument("status", choices=["submitted", "partial", "filled", "cancelled", "rejected"])
    update.add_argument("--price", type=float, default=None)

    replay = sub.add_parser("replay")
    replay.add_argument("csv_path")
    replay.add_argument("--symbol", default="SPY")
    replay.add_argument("--bb-period", type=int, default=20)
    replay.add_argument("--bb-std-dev", type=float, default=2.0)
    replay.add_argument("--no-vwap", action="store_true")
    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_pass(engine: TradingEngine, name: str, loop: bool) -> None:
    method = getattr(engine, PASSES[name])
    while True:
        summary = await method()
        _emit(summary.to_dict())
        if not loop:
            return
        await wait_next_tick(engine.settings.SCAN_INTERVAL)


async def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "replay":
        item = WatchlistItem(
            id="replay",
            user_id="replay",
            symbol=args.symbol,
            bb_period=args.bb_period,
            bb_std_dev=args.bb_std_dev,
            vwap_enabled=not args.no_vwap,
        )
        signals = run_replay(args.csv_path, item)
        metrics = compute_metrics(signals)
        logger.info(render_report(metrics))
        _emit({"metrics": asdict(metrics), "signals": [asdict(s) for s in signals]})
        return 0

    settings = EngineSettings()
    try:
        engine = EngineOrchestrator(settings).build_engine()
        if args.command in PASSES:
            await _run_pass(engine, args.command, args.loop)
        elif args.command == "close-position":
            _emit(asdict(await engine.close_position(args.position_id, reason=args.reason)))
        elif args.command == "cancel-order":
            _emit(asdict(await engine.cancel_order(args.order_id)))
        elif args.command == "modify-order":
            order = await engine.modify_order(
                args.order_id,
                limit_price=args.limit_price,
                trailing_stop_percent=args.trailing_stop_percent,
                stop_loss_price=args.stop_loss,
                take_profit_price=args.take_profit,
            )
            _emit(asdict(order))
        elif args.command == "order-update":
            _emit(asdict(engine.apply_order_update(args.order_id, args.status, filled_price=args.price)))
    except EngineError as exc:
        logger.error("{} failed: {}", args.command, exc)
        _emit({"command": args.command, "error": str(exc)})
        return 1
    return 0


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
