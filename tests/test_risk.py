import math
from datetime import datetime, time, timezone

from data.store import SQLiteStore
from engine.models import Order, new_id
from risk.manager import RiskManager, within_trading_hours
from services.config_service import SignalRule, TradingSettings

# 11:00 in New York
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def _settings(**overrides) -> TradingSettings:
    values = dict(user_id="u1", auto_trade_enabled=True, max_daily_trades=3, max_daily_loss=1000.0, max_position_size=10000.0)
    values.update(overrides)
    return TradingSettings(**values)


def _rule(**overrides) -> SignalRule:
    values = dict(id="r1", user_id="u1", signal_type="bb_breakout_up", position_size_percent=5.0, max_position_value=10000.0)
    values.update(overrides)
    return SignalRule(**values)


def _order(store, side="buy", quantity=10, price=150.0, status="submitted", created_at=None):
    store.add_order(
        Order(
            id=new_id(),
            user_id="u1",
            symbol="AAPL",
            side=side,
            quantity=quantity,
            limit_price=price,
            status=status,
            created_at=created_at if created_at is not None else int(NOW.timestamp()),
        )
    )


def test_risk_auto_trade_disabled(tmp_path):
    rm = RiskManager(SQLiteStore(str(tmp_path / "r.db")))
    decision = rm.evaluate_session(_settings(auto_trade_enabled=False), NOW)
    assert not decision.allowed
    assert decision.reason == "auto-trade disabled"


def test_risk_outside_trading_hours(tmp_path):
    rm = RiskManager(SQLiteStore(str(tmp_path / "r.db")))
    night = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)
    decision = rm.evaluate_session(_settings(), night)
    assert decision.reason == "outside trading hours"


def test_trading_hours_window_is_half_open():
    assert within_trading_hours(time(9, 30), time(16, 0), time(9, 30))
    assert within_trading_hours(time(9, 30), time(16, 0), time(15, 59))
    assert not within_trading_hours(time(9, 30), time(16, 0), time(16, 0))
    assert within_trading_hours(time(22, 0), time(2, 0), time(23, 0))
    assert within_trading_hours(time(22, 0), time(2, 0), time(1, 0))
    assert not within_trading_hours(time(22, 0), time(2, 0), time(3, 0))


def test_risk_max_trades(tmp_path):
    store = SQLiteStore(str(tmp_path / "r.db"))
    _order(store)
    rm = RiskManager(store)
    decision = rm.evaluate_session(_settings(max_daily_trades=1), NOW)
    assert not decision.allowed
    assert decision.reason == "max daily trades reached"


def test_risk_counts_only_todays_orders(tmp_path):
    store = SQLiteStore(str(tmp_path / "r.db"))
    yesterday = int(datetime(2026, 3, 9, 15, 0, tzinfo=timezone.utc).timestamp())
    _order(store, created_at=yesterday)
    _order(store)
    decision = RiskManager(store).evaluate_session(_settings(max_daily_trades=3), NOW)
    assert decision.allowed
    assert decision.trades_remaining == 2


def test_risk_max_daily_loss(tmp_path):
    store = SQLiteStore(str(tmp_path / "r.db"))
    _order(store, side="buy", quantity=10, price=150.0, status="filled")
    decision = RiskManager(store).evaluate_session(_settings(max_daily_trades=10), NOW)
    assert decision.reason == "max daily loss reached"
    assert decision.daily_pnl == -1500.0


def test_daily_pnl_prefers_fill_price(tmp_path):
    store = SQLiteStore(str(tmp_path / "r.db"))
    _order(store, side="buy", quantity=10, price=100.0, status="filled")
    _order(store, side="sell", quantity=10, price=110.0, status="filled")
    _order(store, side="buy", quantity=5, price=100.0, status="submitted")
    rm = RiskManager(store)
    since = rm.day_start(_settings(), NOW)
    assert rm.daily_pnl("u1", since) == 100.0


def test_position_sizing():
    rm = RiskManager(store=None)
    sizing = rm.size_position(_settings(), _rule(), price=150.0, account_value=100000.0)
    assert sizing.allowed
    assert sizing.quantity == 33


def test_position_sizing_clamps_rule_inputs():
    rm = RiskManager(store=None)
    assert rm.size_position(_settings(), _rule(position_size_percent=0.05), 10.0, 100000.0).quantity == 10
    assert rm.size_position(_settings(), _rule(max_position_value=50.0), 10.0, 100000.0).quantity == 10


def test_position_sizing_rejections():
    rm = RiskManager(store=None)
    assert rm.size_position(_settings(), _rule(), math.nan, 100000.0).reason == "invalid price"
    assert rm.size_position(_settings(), _rule(), 150.0, 0.0).reason == "invalid account value"
    too_small = rm.size_position(_settings(), _rule(), 20000.0, 100000.0)
    assert not too_small.allowed
    assert too_small.reason == "position size too small"


def test_record_rejection_and_status(tmp_path):
    store = SQLiteStore(str(tmp_path / "r.db"))
    rm = RiskManager(store)
    rm.record_rejection("u1", "outside trading hours", NOW)
    events = store.list_risk_events("u1")
    assert events[0]["reason"] == "outside trading hours"
    assert events[0]["created_at"] == int(NOW.timestamp())

    _order(store)
    status = rm.risk_status(_settings(max_daily_trades=1), NOW)
    assert status.trades_today == 1
    assert not status.within_limits
