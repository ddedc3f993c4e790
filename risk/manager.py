from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo

from data.store import BaseStore
from engine.validation import clamp, is_finite_positive
from services.config_service import SignalRule, TradingSettings

MAX_DAILY_TRADES_BOUNDS = (1, 1000)
MAX_DAILY_LOSS_BOUNDS = (0.0, 1_000_000.0)
POSITION_SIZE_PERCENT_BOUNDS = (0.1, 100.0)
MAX_POSITION_VALUE_BOUNDS = (100.0, 1_000_000.0)


@dataclass
class RiskDecision:
    allowed: bool
    reason: str | None
    trades_remaining: int = 0
    daily_pnl: float = 0.0


@dataclass
class SizingDecision:
    quantity: int
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.quantity > 0 and self.reason is None


@dataclass
class RiskStatus:
    user_id: str
    trades_today: int
    max_trades: int
    daily_pnl: float
    max_daily_loss: float
    position_value: float
    max_position: float
    within_limits: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _aware(now: datetime) -> datetime:
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


def within_trading_hours(start: time, end: time, local_time: time) -> bool:
    """Half-open window [start, end). A window with end before start spans midnight."""
    if start <= end:
        return start <= local_time < end
    return local_time >= start or local_time < end


class RiskManager:
    def __init__(self, store: BaseStore) -> None:
        self.store = store

    def local_now(self, settings: TradingSettings, now: datetime) -> datetime:
        return _aware(now).astimezone(ZoneInfo(settings.timezone))

    def day_start(self, settings: TradingSettings, now: datetime) -> int:
        local = self.local_now(settings, now)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return int(midnight.timestamp())

    def daily_pnl(self, user_id: str, since_ts: int) -> float:
        pnl = 0.0
        for order in self.store.list_filled_orders_since(user_id, since_ts):
            price = order.filled_price if order.filled_price is not None else order.limit_price
            if not price or not order.quantity:
                continue
            notional = price * order.quantity
            pnl += -notional if order.side == "buy" else notional
        return pnl

    def evaluate_session(self, settings: TradingSettings, now: datetime) -> RiskDecision:
        if not settings.auto_trade_enabled:
            return RiskDecision(False, "auto-trade disabled")

        local = self.local_now(settings, now)
        local_time = local.time().replace(tzinfo=None)
        if not within_trading_hours(settings.trading_hours_start, settings.trading_hours_end, local_time):
            return RiskDecision(False, "outside trading hours")

        since = self.day_start(settings, now)
        max_trades = int(clamp(settings.max_daily_trades, *MAX_DAILY_TRADES_BOUNDS))
        trades_today = self.store.count_orders_since(settings.user_id, since)
        if trades_today >= max_trades:
            return RiskDecision(False, "max daily trades reached")

        max_loss = clamp(settings.max_daily_loss, *MAX_DAILY_LOSS_BOUNDS)
        pnl = self.daily_pnl(settings.user_id, since)
        if pnl <= -max_loss:
            return RiskDecision(False, "max daily loss reached", daily_pnl=pnl)

        return RiskDecision(True, None, trades_remaining=max_trades - trades_today, daily_pnl=pnl)

    def size_position(
        self,
        settings: TradingSettings,
        rule: SignalRule,
        price: float,
        account_value: float,
    ) -> SizingDecision:
        if not is_finite_positive(price):
            return SizingDecision(0, "invalid price")
        if not is_finite_positive(account_value):
            return SizingDecision(0, "invalid account value")
        percent = clamp(rule.position_size_percent, *POSITION_SIZE_PERCENT_BOUNDS)
        budget = min(
            max(settings.max_position_size, 0.0),
            clamp(rule.max_position_value, *MAX_POSITION_VALUE_BOUNDS),
            account_value * percent / 100,
        )
        if not math.isfinite(budget):
            return SizingDecision(0, "invalid position budget")
        quantity = math.floor(budget / price)
        if quantity <= 0:
            return SizingDecision(0, "position size too small")
        return SizingDecision(quantity)

    def risk_status(self, settings: TradingSettings, now: datetime) -> RiskStatus:
        since = self.day_start(settings, now)
        max_trades = int(clamp(settings.max_daily_trades, *MAX_DAILY_TRADES_BOUNDS))
        max_loss = clamp(settings.max_daily_loss, *MAX_DAILY_LOSS_BOUNDS)
        trades_today = self.store.count_orders_since(settings.user_id, since)
        pnl = self.daily_pnl(settings.user_id, since)
        position_value = sum(
            abs((p.current_price or 0.0) * p.quantity) for p in self.store.list_open_positions(settings.user_id)
        )
        return RiskStatus(
            user_id=settings.user_id,
            trades_today=trades_today,
            max_trades=max_trades,
            daily_pnl=pnl,
            max_daily_loss=max_loss,
            position_value=position_value,
            max_position=settings.max_position_size,
            within_limits=trades_today < max_trades
            and position_value < settings.max_position_size
            and pnl > -max_loss,
        )

    def record_rejection(self, user_id: str, reason: str, now: datetime) -> None:
        self.store.add_risk_event(user_id, reason, int(_aware(now).timestamp()))
