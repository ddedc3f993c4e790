from __future__ import annotations

import math
import random
from pathlib import Path
from typing import Callable

import pandas as pd

from adapters.base import MarketDataProvider
from engine.errors import CollaboratorError
from engine.models import Bar
from services.scheduler import utc_now


class StaticMarketData(MarketDataProvider):
    """Deterministic provider over fixed bars. Quotes fall back to the last close."""

    def __init__(self, bars: dict[str, list[Bar]] | None = None, quotes: dict[str, float] | None = None) -> None:
        self.bars = {k: sorted(v, key=lambda b: b.ts) for k, v in (bars or {}).items()}
        self.quotes = dict(quotes or {})

    def set_quote(self, symbol: str, price: float) -> None:
        self.quotes[symbol] = price

    async def get_bars(self, symbol: str, limit: int = 200) -> list[Bar]:
        if symbol not in self.bars:
            raise CollaboratorError(f"No bars for {symbol}")
        return self.bars[symbol][-limit:]

    async def get_quote(self, symbol: str) -> float:
        if symbol in self.quotes:
            return self.quotes[symbol]
        bars = self.bars.get(symbol)
        if not bars:
            raise CollaboratorError(f"No quote for {symbol}")
        return bars[-1].close


class SimulatedMarketData(MarketDataProvider):
    """Seeded random walk around a sine wave, one-minute bars ending at the clock."""

    def __init__(self, seed: int = 7, clock: Callable = utc_now) -> None:
        self._rng = random.Random(seed)
        self.clock = clock
        self._last_close: dict[str, float] = {}

    async def get_bars(self, symbol: str, limit: int = 101) -> list[Bar]:
        rng = self._rng
        now = int(self.clock().timestamp())
        base = 150 + rng.random() * 50
        bars = []
        for i in range(limit - 1, -1, -1):
            price = base + math.sin(i / 10) * 5 + (rng.random() - 0.5) * 2
            open_ = price + (rng.random() - 0.5)
            close = price + (rng.random() - 0.5)
            bars.append(
                Bar(
                    ts=now - i * 60,
                    open=open_,
                    high=max(open_, close, price + rng.random() * 2),
                    low=min(open_, close, price - rng.random() * 2),
                    close=close,
                    volume=float(math.floor(rng.random() * 1_000_000)),
                )
            )
        self._last_close[symbol] = bars[-1].close
        return bars

    async def get_quote(self, symbol: str) -> float:
        if symbol not in self._last_close:
            await self.get_bars(symbol)
        reference = self._last_close[symbol]
        price = reference * (1 + (self._rng.random() - 0.5) * 0.1)
        self._last_close[symbol] = price
        return price


def load_csv_bars(path: str | Path) -> list[Bar]:
    df = pd.read_csv(path)
    bars = [
        Bar(
            ts=int(row["timestamp"]),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row.get("volume", 0)),
        )
        for _, row in df.iterrows()
    ]
    return sorted(bars, key=lambda b: b.ts)


class CsvMarketData(MarketDataProvider):
    """Reads `<directory>/<SYMBOL>.csv` with timestamp/open/high/low/close/volume columns."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._cache: dict[str, list[Bar]] = {}

    def _bars(self, symbol: str) -> list[Bar]:
        if symbol not in self._cache:
            path = self.directory / f"{symbol}.csv"
            if not path.exists():
                raise CollaboratorError(f"No bar file for {symbol}: {path}")
            self._cache[symbol] = load_csv_bars(path)
        return self._cache[symbol]

    async def get_bars(self, symbol: str, limit: int = 200) -> list[Bar]:
        return self._bars(symbol)[-limit:]

    async def get_quote(self, symbol: str) -> float:
        bars = self._bars(symbol)
        if not bars:
            raise CollaboratorError(f"No quote for {symbol}")
        return bars[-1].close
