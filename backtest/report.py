from __future__ import annotations

from backtest.metrics import ReplayMetrics


def render_report(metrics: ReplayMetrics) -> str:
    lines = [f"Total signals: {metrics.total_signals}"]
    lines.extend(f"  {signal_type}: {count}" for signal_type, count in metrics.by_type.items() if count)
    return "\n".join(lines)
