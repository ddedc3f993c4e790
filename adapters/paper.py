from __future__ import annotations

from typing import Iterable

from loguru import logger

from adapters.base import BrokerAdapter
from engine.errors import CollaboratorError
from engine.models import OrderIntent


class PaperBroker(BrokerAdapter):
    """Accepts every order locally. Symbols in `reject_symbols` fail submission."""

    def __init__(self, account_value: float = 100000.0, reject_symbols: Iterable[str] = ()) -> None:
        self.account_value = account_value
        self.reject_symbols = set(reject_symbols)
        self.orders: dict[str, OrderIntent] = {}
        self.cancelled: set[str] = set()
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    async def submit_order(self, intent: OrderIntent) -> str:
        if intent.symbol in self.reject_symbols:
            raise CollaboratorError(f"Paper broker rejected order for {intent.symbol}")
        order_id = self._next_id("paper")
        self.orders[order_id] = intent
        logger.info("Paper order {}: {} {} {} @ {}", order_id, intent.side, intent.quantity, intent.symbol, intent.limit_price)
        return order_id

    async def cancel_order(self, broker_order_id: str) -> None:
        if broker_order_id not in self.orders:
            raise CollaboratorError(f"Unknown paper order: {broker_order_id}")
        self.cancelled.add(broker_order_id)
        logger.info("Paper order {} cancelled", broker_order_id)

    async def modify_order(self, broker_order_id: str, intent: OrderIntent) -> None:
        if broker_order_id not in self.orders or broker_order_id in self.cancelled:
            raise CollaboratorError(f"Unknown paper order: {broker_order_id}")
        self.orders[broker_order_id] = intent
        logger.info("Paper order {} modified: limit {}", broker_order_id, intent.limit_price)

    async def close_position(self, intent: OrderIntent) -> str:
        if intent.symbol in self.reject_symbols:
            raise CollaboratorError(f"Paper broker rejected close for {intent.symbol}")
        order_id = self._next_id("paper-close")
        self.orders[order_id] = intent
        logger.info("Paper close {}: {} {} {} @ {}", order_id, intent.side, intent.quantity, intent.symbol, intent.limit_price)
        return order_id

    async def get_account_value(self, user_id: str) -> float:
        return self.account_value
