from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from engine.models import SIGNAL_TYPES, Signal


@dataclass
class ReplayMetrics:
    total_signals: int
    by_type: dict[str, int] = field(default_factory=dict)


def compute_metrics(signals: list[Signal]) -> ReplayMetrics:
    counts = Counter(s.signal_type for s in signals)
    return ReplayMetrics(total_signals=len(signals), by_type={t: counts.get(t, 0) for t in SIGNAL_TYPES})
