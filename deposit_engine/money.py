"""
Money Arithmetic Module

Fixed-point helpers for every monetary value in the engine. Amounts are
Decimal with exactly two fractional digits, rounded half away from zero.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Optional, Union
import re

# High precision for intermediate products such as principal * rate * days / 365
getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

Amount = Union[Decimal, int, str]


def to_decimal(value: Amount) -> Decimal:
    """
    Convert a value to Decimal without passing through binary floating point

    Raises:
        TypeError: If value is a float or bool
        ValueError: If value cannot be parsed as a finite decimal
    """
    if isinstance(value, bool):
        raise TypeError("Boolean is not a monetary value")
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats; pass Decimal or str")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise TypeError(f"Unsupported monetary type: {type(value).__name__}")

    if not result.is_finite():
        raise ValueError(f"Monetary value must be finite, got {value!r}")
    return result


def round2(value: Amount) -> Decimal:
    """Round to two decimals, half away from zero (1.005 -> 1.01, -1.005 -> -1.01)"""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_amount(value: Amount) -> str:
    """Canonical storage form: plain string with exactly two decimals"""
    return str(round2(value))


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number ("1,250.50", " 0.055 ", "100")

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = value.strip()
    if re.search(r'[^\d.,\-+eE]', clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    # Thousands separators only; a comma is never a decimal point here
    clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def coerce_decimal(value: Any, fallback: Optional[Decimal]) -> Optional[Decimal]:
    """
    Lenient conversion for loosely-typed stored documents

    Returns fallback for anything that is not a finite number.
    """
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, float):
        # Legacy documents may hold JSON numbers; route through repr to keep digits
        value = repr(value)
    try:
        return to_decimal(value)
    except (TypeError, ValueError):
        return fallback


def coerce_int(value: Any, fallback: int) -> int:
    """Lenient integer conversion; decimals are truncated toward zero"""
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    parsed = coerce_decimal(value, None)
    if parsed is None:
        return fallback
    return int(parsed)
