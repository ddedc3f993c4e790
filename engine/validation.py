from __future__ import annotations

import math
import re
from typing import Any

from engine.errors import ValidationError
from engine.models import OrderIntent

_SYMBOL_RE = re.compile(r"^[A-Z]{1,5}$")

MAX_PRICE = 1_000_000.0
MAX_QUANTITY = 1_000_000


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def is_finite_positive(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def validate_symbol(symbol: Any) -> str:
    if not isinstance(symbol, str):
        raise ValidationError("Symbol must be a string")
    cleaned = symbol.strip().upper()
    if not _SYMBOL_RE.match(cleaned):
        raise ValidationError(f"Symbol must be 1-5 uppercase letters: {symbol!r}")
    return cleaned


def validate_positive_number(value: Any, field: str, max_value: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{field} must be a valid number")
    if value <= 0:
        raise ValidationError(f"{field} must be positive")
    if max_value is not None and value > max_value:
        raise ValidationError(f"{field} cannot exceed {max_value}")
    return float(value)


def validate_positive_integer(value: Any, field: str, max_value: int | None = None) -> int:
    number = validate_positive_number(value, field, max_value)
    if not float(number).is_integer():
        raise ValidationError(f"{field} must be a whole number")
    return int(number)


def validate_order_intent(intent: OrderIntent) -> OrderIntent:
    errors: list[str] = []
    checks = [
        lambda: validate_symbol(intent.symbol),
        lambda: validate_positive_integer(intent.quantity, "quantity", MAX_QUANTITY),
        lambda: validate_positive_number(intent.limit_price, "limit_price", MAX_PRICE),
    ]
    if intent.side not in ("buy", "sell"):
        errors.append('Side must be "buy" or "sell"')
    if intent.trailing_stop_percent is not None:
        checks.append(lambda: validate_positive_number(intent.trailing_stop_percent, "trailing_stop_percent", 100))
    if intent.stop_loss_price is not None:
        checks.append(lambda: validate_positive_number(intent.stop_loss_price, "stop_loss_price", MAX_PRICE))
    if intent.take_profit_price is not None:
        checks.append(lambda: validate_positive_number(intent.take_profit_price, "take_profit_price", MAX_PRICE))
    for check in checks:
        try:
            check()
        except ValidationError as exc:
            errors.append(str(exc))
    if errors:
        raise ValidationError("; ".join(errors))
    return intent
