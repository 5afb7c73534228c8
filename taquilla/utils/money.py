"""Conversions between decimal amounts and stored integer cents."""

from decimal import Decimal, InvalidOperation
from typing import Union

from taquilla.errors import ValidationError

CENT = Decimal("0.01")

Amount = Union[Decimal, int, str, float]


def to_cents(amount: Amount) -> int:
    """Convert an amount to integer cents.

    Floats go through ``str`` so 0.1 becomes 10 cents rather than 9. Amounts
    finer than a cent are rejected, never rounded.
    """
    try:
        value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    if value != value.quantize(CENT):
        raise ValidationError("Amount cannot have more than two decimal places", details={"amount": str(value)})
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)
