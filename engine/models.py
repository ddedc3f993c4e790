from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from engine.errors import InvalidTransition

SignalType = Literal[
    "bb_breakout_up",
    "bb_breakout_down",
    "bb_mean_reversion_up",
    "bb_mean_reversion_down",
    "vwap_cross_up",
    "vwap_cross_down",
]
Side = Literal["buy", "sell"]
OrderStatus = Literal["pending", "submitted", "partial", "filled", "cancelled", "rejected"]

SIGNAL_TYPES: tuple[str, ...] = (
    "bb_breakout_up",
    "bb_breakout_down",
    "bb_mean_reversion_up",
    "bb_mean_reversion_down",
    "vwap_cross_up",
    "vwap_cross_down",
)
BUY_SIGNAL_TYPES = frozenset({"bb_breakout_up", "bb_mean_reversion_up", "vwap_cross_up"})

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"submitted", "cancelled", "rejected"}),
    "submitted": frozenset({"partial", "filled", "cancelled", "rejected"}),
    "partial": frozenset({"filled", "cancelled"}),
    "filled": frozenset(),
    "cancelled": frozenset(),
    "rejected": frozenset(),
}


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_transition(current: str, target: str) -> None:
    if target not in ORDER_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)


@dataclass(frozen=True)
class Bar:
    ts: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass
class DetectedSignal:
    signal_type: str
    price: float
    previous_price: float
    bands: BollingerBands
    vwap: float | None
    volume: float
    bar_ts: int


@dataclass
class Signal:
    id: str
    user_id: str
    symbol: str
    signal_type: str
    price_at_signal: float
    bb_upper: float | None
    bb_lower: float | None
    bb_middle: float | None
    vwap: float | None
    volume: float
    triggered_at: int
    executed: bool = False
    watchlist_id: str | None = None
    signal_rule_id: str | None = None
    bar_ts: int | None = None


@dataclass
class OrderIntent:
    user_id: str
    symbol: str
    side: Side
    quantity: int
    limit_price: float
    strategy: str | None = None
    signal_id: str | None = None
    trailing_stop_percent: float | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None


@dataclass
class Order:
    id: str
    user_id: str
    symbol: str
    side: Side
    quantity: int
    limit_price: float
    status: str
    created_at: int
    signal_id: str | None = None
    broker_order_id: str | None = None
    filled_price: float | None = None
    strategy: str | None = None
    trailing_stop_percent: float | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None
    updated_at: int | None = None


@dataclass
class Position:
    id: str
    user_id: str
    order_id: str | None
    symbol: str
    quantity: int
    avg_cost: float
    opened_at: int
    is_open: bool = True
    current_price: float | None = None
    unrealized_pnl: float | None = None
    trailing_stop_percent: float | None = None
    trailing_stop_price: float | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None
    closed_at: int | None = None
    close_reason: str | None = None

    @property
    def direction(self) -> int:
        return -1 if self.quantity < 0 else 1


@dataclass
class PassSummary:
    pass_name: str
    executed: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    errored: list[dict[str, Any]] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)

    def skip(self, reason: str, **context: Any) -> None:
        self.skipped.append({**context, "reason": reason})

    def error(self, error: str, **context: Any) -> None:
        self.errored.append({**context, "error": error})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
