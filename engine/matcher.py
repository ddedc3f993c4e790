from __future__ import annotations

from typing import Iterable

from services.config_service import SignalRule


def match_rules(user_id: str, signal_type: str, rules: Iterable[SignalRule]) -> list[SignalRule]:
    # overlapping rules are allowed, each match executes on its own
    return [r for r in rules if r.enabled and r.user_id == user_id and r.signal_type == signal_type]
