from __future__ import annotations

from abc import ABC, abstractmethod

from engine.models import Bar, OrderIntent


class MarketDataProvider(ABC):
    @abstractmethod
    async def get_bars(self, symbol: str, limit: int = 200) -> list[Bar]:
        """Bars for `symbol`, oldest first."""
        raise NotImplementedError

    @abstractmethod
    async def get_quote(self, symbol: str) -> float:
        raise NotImplementedError


class BrokerAdapter(ABC):
    @abstractmethod
    async def submit_order(self, intent: OrderIntent) -> str:
        """Returns the broker's order id."""
        raise NotImplementedError

    @abstractmethod
    async def cancel_order(self, broker_order_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def modify_order(self, broker_order_id: str, intent: OrderIntent) -> None:
        """Replace the price and protective levels of a working order."""
        raise NotImplementedError

    @abstractmethod
    async def close_position(self, intent: OrderIntent) -> str:
        raise NotImplementedError

    @abstractmethod
    async def get_account_value(self, user_id: str) -> float:
        raise NotImplementedError
