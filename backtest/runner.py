from __future__ import annotations

from adapters.market_data import load_csv_bars
from engine.models import Signal, new_id
from services.config_service import WatchlistItem
from strategies.bollinger_vwap import BollingerVwapStrategy


def run_replay(csv_path: str, item: WatchlistItem) -> list[Signal]:
    bars = load_csv_bars(csv_path)
    strategy = BollingerVwapStrategy()
    indicators = item.indicators()
    signals: list[Signal] = []
    for i in range(item.bb_period - 1, len(bars)):
        window = bars[: i + 1]
        for detected in strategy.generate(window, indicators):
            signals.append(
                Signal(
                    id=new_id(),
                    user_id=item.user_id,
                    symbol=item.symbol,
                    signal_type=detected.signal_type,
                    price_at_signal=detected.price,
                    bb_upper=detected.bands.upper,
                    bb_lower=detected.bands.lower,
                    bb_middle=detected.bands.middle,
                    vwap=detected.vwap or None,
                    volume=detected.volume,
                    triggered_at=detected.bar_ts,
                    watchlist_id=item.id,
                    bar_ts=detected.bar_ts,
                )
            )
    return signals
