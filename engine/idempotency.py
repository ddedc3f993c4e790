from __future__ import annotations

from loguru import logger

from data.store import BaseStore


class Idempotency:
    """At-most-once execution of a signal.

    The claim is a single conditional update on the signal row, so two passes
    racing on the same signal cannot both see it as unclaimed.
    """

    def __init__(self, store: BaseStore) -> None:
        self.store = store

    def exists(self, signal_id: str) -> bool:
        signal = self.store.get_signal(signal_id)
        return bool(signal and signal.executed)

    def check_and_add(self, signal_id: str) -> bool:
        return self.store.claim_signal(signal_id)

    def release(self, signal_id: str) -> None:
        logger.warning("Releasing claim on signal {}", signal_id)
        self.store.release_signal(signal_id)
