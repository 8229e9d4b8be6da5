"""Fixed-point currency helpers."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from escrow_engine.exceptions import ValidationException
from escrow_engine.modules.transaction.constants import (
    MONEY_LIMIT,
    MONEY_QUANTUM,
    PLATFORM_FEE_RATE,
)


def to_money(value: Decimal | str | int, field: str = "amount") -> Decimal:
    """Parse ``value`` as an amount in major units with at most two decimals."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationException(
            f"{field} is not a valid amount", [{"field": field, "message": "Not a number"}]
        ) from exc
    if not amount.is_finite():
        raise ValidationException(
            f"{field} is not a valid amount", [{"field": field, "message": "Not a number"}]
        )
    if amount.copy_abs() >= MONEY_LIMIT:
        raise ValidationException(
            f"{field} is too large",
            [{"field": field, "message": f"Must be less than {MONEY_LIMIT:,f}"}],
        )
    if amount != amount.quantize(MONEY_QUANTUM):
        raise ValidationException(
            f"{field} has more than two decimal places",
            [{"field": field, "message": "At most two decimal places are allowed"}],
        )
    return amount.quantize(MONEY_QUANTUM)


def platform_fee(amount: Decimal) -> Decimal:
    """Informational platform fee shown at checkout; never stored or charged."""
    return (amount * PLATFORM_FEE_RATE).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
