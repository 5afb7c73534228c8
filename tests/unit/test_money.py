from decimal import Decimal

import pytest

from taquilla.errors import ValidationError
from taquilla.utils.money import from_cents, to_cents


@pytest.mark.parametrize(
    "amount,cents",
    [
        (Decimal("12.34"), 1234),
        ("5", 500),
        (7, 700),
        (0.1, 10),
        (Decimal("1.50"), 150),
        (Decimal("2.000"), 200),
    ],
)
def test_to_cents(amount, cents):
    assert to_cents(amount) == cents


@pytest.mark.parametrize("amount", ["abc", None, "NaN", "Infinity"])
def test_invalid_amounts(amount):
    with pytest.raises(ValidationError):
        to_cents(amount)


@pytest.mark.parametrize("amount", [Decimal("1.005"), "0.004", 12.345])
def test_sub_cent_amounts_are_rejected(amount):
    with pytest.raises(ValidationError) as exc:
        to_cents(amount)
    assert exc.value.message == "Amount cannot have more than two decimal places"


def test_from_cents_has_two_decimal_places():
    assert from_cents(1234) == Decimal("12.34")
    assert str(from_cents(500)) == "5.00"
    assert from_cents(0) == Decimal("0.00")
