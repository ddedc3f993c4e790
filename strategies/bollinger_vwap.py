from __future__ import annotations

from typing import Sequence

from engine.models import Bar, BollingerBands, DetectedSignal
from services.config_service import BollingerConfig, IndicatorConfig, VwapConfig
from strategies.base import Strategy
from strategies.indicators import bollinger_bands, vwap


def detect_crossings(
    previous: float,
    current: float,
    bands: BollingerBands,
    vwap_value: float | None = None,
) -> list[str]:
    """Signal types fired by the move previous -> current.

    Breakouts close the band on the previous side (<= / >=) and open it on the
    current side, mean reversions are strict on both, so a price sitting exactly
    on a band fires at most one of the two.
    """
    fired = []
    if previous <= bands.upper and current > bands.upper:
        fired.append("bb_breakout_up")
    if previous >= bands.lower and current < bands.lower:
        fired.append("bb_breakout_down")
    if previous < bands.lower and current > bands.lower:
        fired.append("bb_mean_reversion_up")
    if previous > bands.upper and current < bands.upper:
        fired.append("bb_mean_reversion_down")
    # zero VWAP means no traded volume in the window
    if vwap_value:
        if previous <= vwap_value and current > vwap_value:
            fired.append("vwap_cross_up")
        if previous >= vwap_value and current < vwap_value:
            fired.append("vwap_cross_down")
    return fired


class BollingerVwapStrategy(Strategy):
    def generate(self, bars: list[Bar], indicators: Sequence[IndicatorConfig]) -> list[DetectedSignal]:
        bb_config = next((c for c in indicators if isinstance(c, BollingerConfig)), None)
        if bb_config is None or len(bars) < 2:
            return []
        closes = [b.close for b in bars]
        bands = bollinger_bands(closes, bb_config.period, bb_config.std_dev)
        if bands is None:
            return []
        vwap_value = vwap(bars) if any(isinstance(c, VwapConfig) for c in indicators) else None
        previous, current = closes[-2], closes[-1]
        last = bars[-1]
        return [
            DetectedSignal(
                signal_type=signal_type,
                price=current,
                previous_price=previous,
                bands=bands,
                vwap=vwap_value,
                volume=last.volume,
                bar_ts=last.ts,
            )
            for signal_type in detect_crossings(previous, current, bands, vwap_value)
        ]
