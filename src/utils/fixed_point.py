"""Conversions between on-chain fixed-point integers and decimal strings."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Optional, Union

from src.oracle.errors import ValidationError

UINT256_MAX = 2**256 - 1


def to_decimal_string(raw_value: int, decimals: int, display_places: int = 6) -> str:
    """
    Format an unsigned fixed-point integer as a decimal string.

    The low ``decimals`` digits are fractional. All arithmetic stays in
    strings and ``Decimal`` so values far beyond 2**53 keep every digit.
    """
    raw_value = int(raw_value)
    if raw_value < 0:
        raise ValidationError(f"Fixed-point value must be unsigned, got {raw_value}")
    if decimals < 0 or display_places < 0:
        raise ValidationError("decimals and display_places must be non-negative")

    digits = str(raw_value).rjust(decimals + 1, "0")
    split_at = len(digits) - decimals
    text = digits[:split_at]
    if decimals:
        text = f"{text}.{digits[split_at:]}"

    with localcontext() as ctx:
        ctx.prec = len(digits) + display_places + 2
        quantum = Decimal(1).scaleb(-display_places)
        rounded = Decimal(text).quantize(quantum, rounding=ROUND_HALF_UP)
    return format(rounded, "f")


def to_fixed_point_integer(value: Union[int, float, Decimal, str], multiplier: int) -> int:
    """Scale a decimal value by ``multiplier`` and round half-up to an integer."""
    if isinstance(value, float):
        # repr gives the shortest round-tripping text, e.g. 42.5 -> "42.5"
        value = Decimal(repr(value))
    amount = Decimal(value)
    if not amount.is_finite():
        raise ValidationError(f"Cannot encode non-finite value {value}")

    # a product with more digits than UINT256_MAX can never fit, whatever the rounding
    if amount and amount.adjusted() + len(str(multiplier)) > len(str(UINT256_MAX)):
        if amount < 0:
            raise ValidationError(f"Value {value} * {multiplier} is negative and cannot be stored as uint256")
        raise ValidationError(f"Value {value} * {multiplier} overflows uint256")

    with localcontext() as ctx:
        ctx.prec = max(len(amount.as_tuple().digits) + len(str(multiplier)) + 2, len(str(UINT256_MAX)) + 4)
        scaled = (amount * Decimal(multiplier)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    result = int(scaled)

    if result < 0:
        raise ValidationError(f"Value {value} * {multiplier} is negative and cannot be stored as uint256")
    if result > UINT256_MAX:
        raise ValidationError(f"Value {value} * {multiplier} overflows uint256")
    return result


def multiplier_decimals(multiplier: int) -> Optional[int]:
    """Return ``k`` when ``multiplier == 10**k``, else ``None``."""
    if multiplier < 1:
        return None
    text = str(multiplier)
    if text[0] == "1" and set(text[1:]) <= {"0"}:
        return len(text) - 1
    return None
