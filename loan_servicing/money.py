"""
Money Arithmetic Module

Decimal helpers for monetary values. Every figure is held as a Decimal and
rounded to two places after each arithmetic step. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
TOLERANCE = Decimal('0.01')  # Conservation checks allow one cent of drift


def round_money(value: Any) -> Decimal:
    """Round a value to two decimal places, half up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or user-supplied value to Decimal without passing
    through float.

    Raises:
        ValueError: If the value is not numeric or not finite
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        result = value
    else:
        if isinstance(value, float):
            value = repr(value)
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Monetary value must be finite, got '{value}'")
    return result


def money_add(*values: Any) -> Decimal:
    """Sum values, rounding after every addition"""
    total = ZERO
    for value in values:
        total = round_money(total + to_decimal(value))
    return total


def money_sub(minuend: Any, subtrahend: Any) -> Decimal:
    """Subtract and round"""
    return round_money(to_decimal(minuend) - to_decimal(subtrahend))


def money_sum(values: Iterable[Any]) -> Decimal:
    return money_add(*values)


def clamp_floor(value: Any, floor: Decimal = ZERO) -> Decimal:
    """Clamp a monetary value to a floor (zero by default)"""
    value = round_money(value)
    return value if value > floor else floor

