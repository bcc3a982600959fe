"""Money helpers: parsing, validation and cent quantization."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from rebate_ledger.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """Coerce a user-supplied value to Decimal.

    Floats go through ``str`` so 909.09 stays 909.09. Booleans, NaN and
    infinities are rejected.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be numeric", details={field: value})
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(
                f"{field} must be numeric", details={field: value}
            ) from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", details={field: value})
    return result


def positive_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse an amount that must be strictly positive."""
    amount = to_decimal(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be positive", details={field: value})
    return amount


def rebate_rate(value: Any, field: str = "rebate_rate") -> Decimal:
    """Parse a rebate percentage in the closed range 0..100."""
    rate = to_decimal(value, field)
    if rate < 0 or rate > HUNDRED:
        raise ValidationError(
            f"{field} must be between 0 and 100", details={field: value}
        )
    return rate


def quantize(amount: Decimal, quantum: Decimal = CENT) -> Decimal:
    """Round to cents, half up."""
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, rate: Decimal) -> Decimal:
    """``amount × rate ÷ 100`` rounded to cents."""
    if rate <= 0:
        return quantize(ZERO)
    return quantize(amount * rate / HUNDRED)
