import math

import pytest

from engine.errors import ValidationError
from engine.models import OrderIntent
from engine.validation import validate_order_intent, validate_positive_integer, validate_positive_number, validate_symbol


def test_symbol_is_normalized():
    assert validate_symbol(" aapl ") == "AAPL"


@pytest.mark.parametrize("symbol", ["", "TOOLONG", "BRK.B", "A1", 42])
def test_bad_symbols_rejected(symbol):
    with pytest.raises(ValidationError):
        validate_symbol(symbol)


def test_positive_number_bounds():
    assert validate_positive_number(5, "price") == 5.0
    with pytest.raises(ValidationError, match="positive"):
        validate_positive_number(0, "price")
    with pytest.raises(ValidationError, match="valid number"):
        validate_positive_number(math.inf, "price")
    with pytest.raises(ValidationError, match="valid number"):
        validate_positive_number(True, "price")
    with pytest.raises(ValidationError, match="cannot exceed"):
        validate_positive_number(11, "price", max_value=10)


def test_positive_integer_requires_whole_number():
    assert validate_positive_integer(3.0, "quantity") == 3
    with pytest.raises(ValidationError, match="whole number"):
        validate_positive_integer(2.5, "quantity")


def test_order_intent_reports_every_problem():
    intent = OrderIntent(user_id="u1", symbol="bad1", side="buy", quantity=0, limit_price=-1.0)
    with pytest.raises(ValidationError) as info:
        validate_order_intent(intent)
    message = str(info.value)
    assert "Symbol" in message
    assert "quantity" in message
    assert "limit_price" in message


def test_valid_order_intent_passes():
    intent = OrderIntent(user_id="u1", symbol="AAPL", side="sell", quantity=10, limit_price=150.0, stop_loss_price=180.0)
    assert validate_order_intent(intent) is intent
