from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from loguru import logger

from adapters.base import BrokerAdapter
from data.store import BaseStore
from engine.errors import PositionClosed, ValidationError
from engine.idempotency import Idempotency
from engine.models import BUY_SIGNAL_TYPES, Order, OrderIntent, Position, Side, Signal, ensure_transition, new_id
from engine.validation import clamp, validate_order_intent, validate_positive_number
from services.config_service import SignalRule


@dataclass(frozen=True)
class ProtectivePrices:
    stop_loss: float | None
    take_profit: float | None
    trailing_stop: float | None


@dataclass
class ExecutionResult:
    status: Literal["executed", "skipped", "errored"]
    signal_id: str
    reason: str | None = None
    order: Order | None = None
    position: Position | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"signal_id": self.signal_id, "status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.order:
            data.update(
                order_id=self.order.id,
                broker_order_id=self.order.broker_order_id,
                symbol=self.order.symbol,
                side=self.order.side,
                quantity=self.order.quantity,
                price=self.order.limit_price,
            )
        if self.position:
            data["position_id"] = self.position.id
        return data


def order_side(signal_type: str) -> Side:
    return "buy" if signal_type in BUY_SIGNAL_TYPES else "sell"


def _level(price: float, sign: int, percent: float | None) -> float | None:
    if not percent:
        return None
    level = price * (1 + sign * clamp(percent, 0.0, 100.0) / 100)
    return level if level > 0 else None


def protective_prices(
    price: float,
    side: Side,
    stop_loss_percent: float | None = None,
    take_profit_percent: float | None = None,
    trailing_stop_percent: float | None = None,
) -> ProtectivePrices:
    sign = 1 if side == "buy" else -1
    return ProtectivePrices(
        stop_loss=_level(price, -sign, stop_loss_percent),
        take_profit=_level(price, sign, take_profit_percent),
        trailing_stop=_level(price, -sign, trailing_stop_percent),
    )


class ExecutionEngine:
    def __init__(self, store: BaseStore, broker: BrokerAdapter) -> None:
        self.store = store
        self.broker = broker
        self.idempotency = Idempotency(store)

    async def execute(self, signal: Signal, rule: SignalRule, quantity: int, now: datetime) -> ExecutionResult:
        side = order_side(signal.signal_type)
        levels = protective_prices(
            signal.price_at_signal,
            side,
            rule.stop_loss_percent,
            rule.take_profit_percent,
            rule.trailing_stop_percent,
        )
        trailing_percent = clamp(rule.trailing_stop_percent, 0.0, 100.0) if rule.trailing_stop_percent else None
        intent = OrderIntent(
            user_id=signal.user_id,
            symbol=signal.symbol,
            side=side,
            quantity=quantity,
            limit_price=signal.price_at_signal,
            strategy=rule.option_strategy,
            signal_id=signal.id,
            trailing_stop_percent=trailing_percent,
            stop_loss_price=levels.stop_loss,
            take_profit_price=levels.take_profit,
        )
        try:
            validate_order_intent(intent)
        except ValidationError as exc:
            return ExecutionResult("skipped", signal.id, reason=str(exc))

        if not self.idempotency.check_and_add(signal.id):
            logger.info("Signal {} already executed", signal.id)
            return ExecutionResult("skipped", signal.id, reason="already executed")

        try:
            broker_order_id = await self.broker.submit_order(intent)
        except Exception as exc:
            logger.error("Order submission failed for signal {} ({}): {}", signal.id, signal.symbol, exc)
            self.idempotency.release(signal.id)
            return ExecutionResult("errored", signal.id, reason=f"broker submission failed: {exc}")

        ts = int(now.timestamp())
        order = Order(
            id=new_id(),
            user_id=signal.user_id,
            symbol=signal.symbol,
            side=side,
            quantity=quantity,
            limit_price=signal.price_at_signal,
            status="submitted",
            created_at=ts,
            updated_at=ts,
            signal_id=signal.id,
            broker_order_id=broker_order_id,
            strategy=rule.option_strategy,
            trailing_stop_percent=trailing_percent,
            stop_loss_price=levels.stop_loss,
            take_profit_price=levels.take_profit,
        )
        position = Position(
            id=new_id(),
            user_id=signal.user_id,
            order_id=order.id,
            symbol=signal.symbol,
            quantity=quantity if side == "buy" else -quantity,
            avg_cost=signal.price_at_signal,
            opened_at=ts,
            current_price=signal.price_at_signal,
            unrealized_pnl=0.0,
            trailing_stop_percent=trailing_percent,
            trailing_stop_price=levels.trailing_stop,
            stop_loss_price=levels.stop_loss,
            take_profit_price=levels.take_profit,
        )
        try:
            self.store.record_execution(order, position)
        except Exception as exc:
            logger.exception(
                "Broker accepted {} for signal {} but order/position were not stored: {}",
                broker_order_id,
                signal.id,
                exc,
            )
            return ExecutionResult("errored", signal.id, reason=f"store write failed: {exc}")

        logger.info("Auto-executed: {} {} {} @ {} (order {})", side, quantity, signal.symbol, signal.price_at_signal, order.id)
        return ExecutionResult("executed", signal.id, order=order, position=position)

    async def close_position(self, position: Position, price: float, reason: str, now: datetime) -> Order:
        if not position.is_open:
            raise PositionClosed(position.id)
        validate_positive_number(price, "price")
        side: Side = "sell" if position.quantity > 0 else "buy"
        intent = OrderIntent(
            user_id=position.user_id,
            symbol=position.symbol,
            side=side,
            quantity=abs(position.quantity),
            limit_price=price,
            strategy="close",
        )
        if not self.store.claim_close(position.id):
            raise PositionClosed(position.id)
        try:
            broker_order_id = await self.broker.close_position(intent)
        except Exception as exc:
            logger.error("Close submission failed for position {} ({}): {}", position.id, position.symbol, exc)
            self.store.release_close(position.id)
            raise

        ts = int(now.timestamp())
        order = Order(
            id=new_id(),
            user_id=position.user_id,
            symbol=position.symbol,
            side=side,
            quantity=abs(position.quantity),
            limit_price=price,
            status="submitted",
            created_at=ts,
            updated_at=ts,
            broker_order_id=broker_order_id,
            strategy="close",
        )
        position.is_open = False
        position.closed_at = ts
        position.close_reason = reason
        position.current_price = price
        position.unrealized_pnl = (price - position.avg_cost) * position.quantity
        try:
            self.store.record_close(order, position)
        except Exception as exc:
            # the claim stays so the close is never resubmitted
            logger.exception(
                "Broker accepted close {} for position {} but it was not stored: {}", broker_order_id, position.id, exc
            )
            raise
        logger.info("Closed position {} ({}) at {}: {}", position.id, position.symbol, price, reason)
        return order

    async def modify_order(
        self,
        order_id: str,
        now: datetime,
        limit_price: float | None = None,
        trailing_stop_percent: float | None = None,
        stop_loss_price: float | None = None,
        take_profit_price: float | None = None,
    ) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise ValidationError(f"Unknown order: {order_id}")
        if order.status not in ("pending", "submitted"):
            raise ValidationError(f"Order {order_id} is {order.status} and cannot be modified")
        if limit_price is not None:
            order.limit_price = limit_price
        if trailing_stop_percent is not None:
            order.trailing_stop_percent = trailing_stop_percent
        if stop_loss_price is not None:
            order.stop_loss_price = stop_loss_price
        if take_profit_price is not None:
            order.take_profit_price = take_profit_price
        intent = OrderIntent(
            user_id=order.user_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            limit_price=order.limit_price,
            strategy=order.strategy,
            signal_id=order.signal_id,
            trailing_stop_percent=order.trailing_stop_percent,
            stop_loss_price=order.stop_loss_price,
            take_profit_price=order.take_profit_price,
        )
        validate_order_intent(intent)
        if order.broker_order_id:
            await self.broker.modify_order(order.broker_order_id, intent)

        order.updated_at = int(now.timestamp())
        positions = [p for p in self.store.list_positions_for_order(order.id) if p.is_open]
        for position in positions:
            if order.trailing_stop_percent != position.trailing_stop_percent:
                position.trailing_stop_percent = order.trailing_stop_percent
                position.trailing_stop_price = protective_prices(
                    position.current_price or position.avg_cost,
                    order.side,
                    trailing_stop_percent=order.trailing_stop_percent,
                ).trailing_stop
            position.stop_loss_price = order.stop_loss_price
            position.take_profit_price = order.take_profit_price
        self.store.record_modification(order, positions)
        logger.info("Order {} modified ({} open positions updated)", order.id, len(positions))
        return order

    async def cancel_order(self, order_id: str, now: datetime) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise ValidationError(f"Unknown order: {order_id}")
        ensure_transition(order.status, "cancelled")
        if order.broker_order_id:
            await self.broker.cancel_order(order.broker_order_id)
        ts = int(now.timestamp())
        self.store.update_order_status(order.id, "cancelled", ts)
        order.status = "cancelled"
        order.updated_at = ts
        logger.info("Order {} cancelled", order.id)
        return order

    def apply_order_update(self, order_id: str, status: str, now: datetime, filled_price: float | None = None) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise ValidationError(f"Unknown order: {order_id}")
        ensure_transition(order.status, status)
        if filled_price is not None:
            filled_price = validate_positive_number(filled_price, "filled_price")
        ts = int(now.timestamp())
        self.store.update_order_status(order.id, status, ts, filled_price)
        order.status = status
        order.updated_at = ts
        if filled_price is not None:
            order.filled_price = filled_price
        logger.info("Order {} -> {}", order.id, status)
        return order
