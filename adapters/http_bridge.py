from __future__ import annotations

from dataclasses import asdict
from typing import Any

import httpx

from adapters.base import BrokerAdapter, MarketDataProvider
from engine.errors import CollaboratorError
from engine.models import Bar, OrderIntent


class _HttpBridge:
    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, f"{self.base_url}{path}", **kwargs)
                resp.raise_for_status()
                return resp.json() if resp.content else None
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"{method} {path} failed: {exc}") from exc


class HttpMarketData(_HttpBridge, MarketDataProvider):
    async def get_bars(self, symbol: str, limit: int = 200) -> list[Bar]:
        data = await self._request("GET", "/bars", params={"symbol": symbol, "limit": limit})
        bars = [Bar(**row) for row in data]
        return sorted(bars, key=lambda b: b.ts)

    async def get_quote(self, symbol: str) -> float:
        data = await self._request("GET", "/quote", params={"symbol": symbol})
        return float(data["price"])


class HttpBroker(_HttpBridge, BrokerAdapter):
    async def submit_order(self, intent: OrderIntent) -> str:
        data = await self._request("POST", "/orders", json=asdict(intent))
        return str(data["order_id"])

    async def cancel_order(self, broker_order_id: str) -> None:
        await self._request("DELETE", f"/orders/{broker_order_id}")

    async def modify_order(self, broker_order_id: str, intent: OrderIntent) -> None:
        await self._request("PUT", f"/orders/{broker_order_id}", json=asdict(intent))

    async def close_position(self, intent: OrderIntent) -> str:
        data = await self._request("POST", "/positions/close", json=asdict(intent))
        return str(data["order_id"])

    async def get_account_value(self, user_id: str) -> float:
        data = await self._request("GET", "/account", params={"user_id": user_id})
        return float(data["value"])
