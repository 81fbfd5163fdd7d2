"""
Money Module

Decimal amounts, two-place rounding and Rand display formatting.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any
import re

# Set global decimal context for financial precision
getcontext().prec = 28

TWO_PLACES = Decimal('0.01')
CURRENCY_PREFIX = re.compile(r'^(ZAR|R)\s*', re.IGNORECASE)
AMOUNT_PATTERN = re.compile(r'^[+-]?[\d.,]*\d[\d.,]*$')


class Currency(Enum):
    """ISO 4217 currency codes with precision and display symbol"""
    ZAR = ("ZAR", 2, "R")  # South African Rand

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency = Currency.ZAR

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def to_string(self) -> str:
        """Format for display, e.g. R1250.00"""
        return f"{self.currency.symbol}{self.amount:.{self.currency.precision}f}"


def quantize_amount(value: Decimal) -> Decimal:
    """Round a Decimal to two places using ROUND_HALF_UP"""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or user-supplied amount to Decimal

    Accepts Decimal, int, str and float (floats go through str() so that
    0.1 stays 0.1). Strings may carry a currency prefix or thousands
    separators.

    Raises:
        ValueError: If the value cannot be converted
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {value!r} to Decimal")


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "R 1,250.00"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Only a leading currency prefix and whitespace are stripped
    clean_value = re.sub(r"\s+", "", CURRENCY_PREFIX.sub("", value.strip()))
    if not AMOUNT_PATTERN.match(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Decimal comma, as written in en-ZA
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result


def format_rand(value: Any) -> str:
    """Format an amount in Rand prefix notation, e.g. R1250.00"""
    return Money(to_decimal(value)).to_string()
