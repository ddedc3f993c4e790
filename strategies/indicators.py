from __future__ import annotations

from typing import Sequence

import pandas as pd

from engine.models import Bar, BollingerBands


def bollinger_bands(prices: Sequence[float], period: int = 20, std_dev: float = 2.0) -> BollingerBands | None:
    """Bands over the last `period` prices using the population standard deviation."""
    if period <= 0:
        raise ValueError(f"period must be positive: {period}")
    if len(prices) < period:
        return None
    window = pd.Series(list(prices), dtype="float64").tail(period)
    middle = float(window.mean())
    sigma = float(window.std(ddof=0))
    return BollingerBands(
        upper=middle + sigma * std_dev,
        middle=middle,
        lower=middle - sigma * std_dev,
    )


def _bars_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    return pd.DataFrame(
        [(b.high, b.low, b.close, b.volume) for b in bars],
        columns=["high", "low", "close", "volume"],
        dtype="float64",
    )


def vwap(bars: Sequence[Bar]) -> float:
    """Cumulative VWAP over `bars` in order. 0.0 when no volume traded."""
    if not bars:
        return 0.0
    df = _bars_frame(bars)
    volume = float(df["volume"].sum())
    if volume <= 0:
        return 0.0
    typical = (df["high"] + df["low"] + df["close"]) / 3
    return float((typical * df["volume"]).sum() / volume)

