from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from adapters.base import MarketDataProvider
from data.store import BaseStore
from engine.errors import PositionClosed
from engine.execution import ExecutionEngine
from engine.models import Position
from engine.validation import MAX_PRICE, clamp, validate_positive_number


@dataclass
class MonitorUpdate:
    price: float
    unrealized_pnl: float
    trailing_stop_price: float | None
    trigger: str | None = None


def ratchet_trailing_stop(position: Position, price: float) -> float | None:
    """Move the trailing stop toward the price, never away from it.

    Long stops only rise and short stops only fall.
    """
    if not position.trailing_stop_percent:
        return position.trailing_stop_price
    percent = clamp(position.trailing_stop_percent, 0.0, 100.0)
    if position.direction > 0:
        candidate = price * (1 - percent / 100)
        old = position.trailing_stop_price
        return candidate if old is None else max(old, candidate)
    candidate = price * (1 + percent / 100)
    old = position.trailing_stop_price
    return candidate if old is None else min(old, candidate)


def _crossed(price: float, level: float | None, direction: int, adverse: bool) -> bool:
    if level is None:
        return False
    # adverse levels are below a long and above a short
    if adverse == (direction > 0):
        return price <= level
    return price >= level


class PositionMonitor:
    def __init__(
        self,
        store: BaseStore,
        market_data: MarketDataProvider,
        execution: ExecutionEngine,
        auto_close: bool = True,
    ) -> None:
        self.store = store
        self.market_data = market_data
        self.execution = execution
        self.auto_close = auto_close

    @staticmethod
    def evaluate(position: Position, price: float) -> MonitorUpdate:
        direction = position.direction
        stop = ratchet_trailing_stop(position, price)
        trigger = None
        if _crossed(price, position.stop_loss_price, direction, adverse=True):
            trigger = "stop_loss"
        elif _crossed(price, position.take_profit_price, direction, adverse=False):
            trigger = "take_profit"
        elif _crossed(price, stop, direction, adverse=True):
            trigger = "trailing_stop"
        return MonitorUpdate(
            price=price,
            unrealized_pnl=(price - position.avg_cost) * position.quantity,
            trailing_stop_price=stop,
            trigger=trigger,
        )

    async def process(self, position: Position, now: datetime) -> dict[str, Any]:
        quote = await self.market_data.get_quote(position.symbol)
        price = validate_positive_number(quote, f"quote for {position.symbol}", MAX_PRICE)

        update = self.evaluate(position, price)
        position.current_price = update.price
        position.unrealized_pnl = update.unrealized_pnl
        position.trailing_stop_price = update.trailing_stop_price
        self.store.update_position_mark(position)

        outcome: dict[str, Any] = {
            "position_id": position.id,
            "user_id": position.user_id,
            "symbol": position.symbol,
            "price": update.price,
            "unrealized_pnl": update.unrealized_pnl,
        }
        stored = self.store.get_position(position.id)
        if stored is None or not stored.is_open:
            logger.info("Position {} closed concurrently", position.id)
            outcome.update(trailing_stop_price=update.trailing_stop_price, action="already closed")
            return outcome
        if stored.trailing_stop_price != update.trailing_stop_price:
            # another pass already ratcheted further; judge against the stored stop
            position = stored
            update = self.evaluate(stored, price)
        outcome["trailing_stop_price"] = update.trailing_stop_price
        if update.trigger is None:
            outcome["action"] = "updated"
            return outcome

        outcome["trigger"] = update.trigger
        if not self.auto_close:
            logger.warning("Position {} ({}) hit {} at {}", position.id, position.symbol, update.trigger, price)
            outcome["action"] = "flagged"
            return outcome

        try:
            order = await self.execution.close_position(position, price, update.trigger, now)
        except PositionClosed:
            logger.info("Position {} closed concurrently", position.id)
            outcome["action"] = "already closed"
            return outcome
        outcome["action"] = "closed"
        outcome["close_order_id"] = order.id
        return outcome
