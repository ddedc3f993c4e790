import asyncio
from datetime import datetime, timezone

import pytest

from adapters.market_data import StaticMarketData
from adapters.paper import PaperBroker
from data.store import SQLiteStore
from engine.core import TradingEngine
from engine.errors import ConfigurationError
from engine.models import Bar, Order, new_id
from services.config_service import ConfigService, EngineSettings

# 11:00 in New York
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def _bars(closes, start=1_773_150_000):
    return [Bar(ts=start + i * 60, open=c, high=c, low=c, close=c, volume=1000.0) for i, c in enumerate(closes)]


BREAKOUT = _bars([100.0] * 20 + [100.0, 150.0])


def _seed(store, max_daily_trades=10, symbols=("AAPL",), rules=1, **rule_fields):
    store.save_trading_settings("u1", auto_trade_enabled=True, max_daily_trades=max_daily_trades)
    for symbol in symbols:
        store.add_watchlist_item("u1", symbol, bb_period=20, bb_std_dev=2.0, vwap_enabled=False)
    for _ in range(rules):
        store.add_signal_rule("u1", "bb_breakout_up", position_size_percent=5.0, max_position_value=10000.0, **rule_fields)


def _engine(store, market=None, broker=None, **settings):
    values = dict(MAX_CONCURRENCY=4, UNIT_TIMEOUT_SECONDS=5.0, AUTO_CLOSE_POSITIONS=True)
    values.update(settings)
    return TradingEngine(
        store,
        ConfigService(store),
        market or StaticMarketData({"AAPL": BREAKOUT}),
        broker or PaperBroker(account_value=100000.0),
        settings=EngineSettings(**values),
        clock=lambda: NOW,
    )


def test_scan_detects_and_executes_breakout(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)

    summary = asyncio.run(_engine(store).run_signal_scan())

    assert summary.errored == []
    assert [d["signal_type"] for d in summary.details] == ["bb_breakout_up"]
    assert len(summary.executed) == 1
    executed = summary.executed[0]
    assert executed["side"] == "buy"
    assert executed["quantity"] == 33
    position = store.get_position(executed["position_id"])
    assert position.quantity == 33
    assert position.avg_cost == 150.0
    assert store.get_signal(executed["signal_id"]).executed


def test_rescan_never_duplicates_orders(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)
    engine = _engine(store)

    asyncio.run(engine.run_signal_scan(NOW))
    second = asyncio.run(engine.run_signal_scan(NOW))

    assert second.executed == []
    assert any(s["reason"] == "signal already recorded for this bar" for s in second.skipped)
    assert len(store.list_orders("u1")) == 1


def test_daily_trade_limit_blocks_second_trade(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, max_daily_trades=1)
    store.add_order(
        Order(
            id=new_id(),
            user_id="u1",
            symbol="MSFT",
            side="buy",
            quantity=1,
            limit_price=300.0,
            status="submitted",
            created_at=int(NOW.timestamp()),
        )
    )

    summary = asyncio.run(_engine(store).run_signal_scan())

    assert summary.executed == []
    assert [s["reason"] for s in summary.skipped] == ["max daily trades reached"]
    assert store.list_risk_events("u1")[0]["reason"] == "max daily trades reached"
    assert len(store.list_orders("u1")) == 1


def test_daily_trade_limit_applies_within_a_pass(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, max_daily_trades=1, rules=2)

    summary = asyncio.run(_engine(store).run_signal_scan())

    assert len(summary.details) == 2
    assert len(summary.executed) == 1
    assert [s["reason"] for s in summary.skipped] == ["max daily trades reached"]


def test_outside_hours_keeps_signal_pending(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)
    night = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)

    summary = asyncio.run(_engine(store).run_signal_scan(night))

    assert summary.executed == []
    assert [s["reason"] for s in summary.skipped] == ["outside trading hours"]
    assert len(store.list_pending_signals("u1")) == 1


def test_missing_collaborator_is_fatal(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    with pytest.raises(ConfigurationError, match="market_data"):
        TradingEngine(store, ConfigService(store), None, PaperBroker(), settings=EngineSettings())


def test_failed_unit_does_not_stop_others(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, symbols=("AAPL", "MSFT"))

    summary = asyncio.run(_engine(store).run_signal_scan())

    assert len(summary.executed) == 1
    assert summary.errored[0]["symbol"] == "MSFT"
    assert "No bars for MSFT" in summary.errored[0]["error"]


def test_slow_unit_times_out(tmp_path):
    class SlowMarketData(StaticMarketData):
        async def get_bars(self, symbol, limit=200):
            if symbol == "MSFT":
                await asyncio.sleep(1)
            return await super().get_bars(symbol, limit)

    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, symbols=("AAPL", "MSFT"))
    market = SlowMarketData({"AAPL": BREAKOUT, "MSFT": BREAKOUT})

    summary = asyncio.run(_engine(store, market=market, UNIT_TIMEOUT_SECONDS=0.05).run_signal_scan())

    assert summary.errored[0]["symbol"] == "MSFT"
    assert summary.errored[0]["error"].startswith("timed out")
    assert len(summary.executed) == 1


def test_broker_rejection_is_reported(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)

    summary = asyncio.run(_engine(store, broker=PaperBroker(reject_symbols={"AAPL"})).run_signal_scan())

    assert summary.executed == []
    assert "broker submission failed" in summary.errored[0]["error"]
    assert len(store.list_pending_signals("u1")) == 1


def test_invalid_watchlist_symbol_is_skipped(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, symbols=("AAPL", "TOOLONG"))

    summary = asyncio.run(_engine(store).run_signal_scan())

    assert len(summary.executed) == 1
    rejected = [s for s in summary.skipped if s.get("symbol") == "TOOLONG"]
    assert len(rejected) == 1


def test_trailing_stop_pass_closes_position(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, trailing_stop_percent=5.0)
    market = StaticMarketData({"AAPL": BREAKOUT})
    engine = _engine(store, market=market)
    asyncio.run(engine.run_signal_scan())

    market.set_quote("AAPL", 160.0)
    updated = asyncio.run(engine.run_trailing_stop_update())
    assert updated.details[0]["trailing_stop_price"] == pytest.approx(152.0)

    market.set_quote("AAPL", 151.0)
    closed = asyncio.run(engine.run_trailing_stop_update())
    assert closed.executed[0]["trigger"] == "trailing_stop"
    assert store.list_open_positions("u1") == []


def test_risk_check_reports_each_user(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)
    engine = _engine(store)
    asyncio.run(engine.run_signal_scan())

    summary = asyncio.run(engine.run_risk_check())

    status = summary.details[0]
    assert status["user_id"] == "u1"
    assert status["trades_today"] == 1
    assert status["position_value"] == pytest.approx(33 * 150.0)


def test_manual_close_uses_quote(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)
    market = StaticMarketData({"AAPL": BREAKOUT}, quotes={"AAPL": 155.0})
    engine = _engine(store, market=market)
    summary = asyncio.run(engine.run_signal_scan())

    order = asyncio.run(engine.close_position(summary.executed[0]["position_id"]))

    assert order.limit_price == 155.0
    assert order.side == "sell"
    assert store.list_open_positions("u1") == []


def test_trailing_stop_pass_skips_invalid_quotes(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store)
    market = StaticMarketData({"AAPL": BREAKOUT})
    engine = _engine(store, market=market)
    position_id = asyncio.run(engine.run_signal_scan()).executed[0]["position_id"]

    market.set_quote("AAPL", 0.0)
    summary = asyncio.run(engine.run_trailing_stop_update())

    assert summary.skipped == [
        {"position_id": position_id, "user_id": "u1", "symbol": "AAPL", "reason": "quote for AAPL must be positive"}
    ]
    assert summary.errored == []
    assert store.get_position(position_id).current_price == 150.0


def test_modify_order_through_engine(tmp_path):
    store = SQLiteStore(str(tmp_path / "e.db"))
    _seed(store, stop_loss_percent=10.0)
    engine = _engine(store)
    executed = asyncio.run(engine.run_signal_scan()).executed[0]

    order = asyncio.run(engine.modify_order(executed["order_id"], stop_loss_price=140.0))

    assert order.stop_loss_price == 140.0
    assert store.get_position(executed["position_id"]).stop_loss_price == 140.0
