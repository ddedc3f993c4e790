from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


_TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timeframe_seconds(tf: str) -> int:
    if tf not in _TIMEFRAME_SECONDS:
        raise ValueError(f"Unsupported timeframe: {tf}")
    return _TIMEFRAME_SECONDS[tf]


def seconds_until_next_tick(tf: str, now: int) -> int:
    seconds = timeframe_seconds(tf)
    next_tick = ((now // seconds) + 1) * seconds
    return max(0, next_tick - now)


async def wait_next_tick(tf: str) -> None:
    await asyncio.sleep(seconds_until_next_tick(tf, int(time.time())))
