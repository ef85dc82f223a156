"""
Currency and Weight Precision Module

Money in ISO 4217 currencies plus the rounding rules for persisted amounts:
currency to 2 decimal places, gold weight to 3, both ROUND_HALF_UP.
NEVER uses float for monetary or weight values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CURRENCY_QUANTUM = Decimal('0.01')
GRAM_QUANTUM = Decimal('0.001')
PERCENT_QUANTUM = Decimal('0.01')

DecimalLike = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    MYR = ("MYR", 2)  # Malaysian Ringgit
    SGD = ("SGD", 2)  # Singapore Dollar
    BND = ("BND", 2)  # Brunei Dollar
    USD = ("USD", 2)  # US Dollar

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value: DecimalLike) -> Decimal:
    """Convert int/str/Decimal to Decimal, refusing floats"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError("Monetary and weight values must not be floats")
    if isinstance(value, int):
        return Decimal(value)
    return decimal_from_string(value)


def round_currency(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return value.quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)


def round_grams(value: Decimal) -> Decimal:
    """Round a gold weight to 3 decimal places, half-up"""
    return value.quantize(GRAM_QUANTUM, rounding=ROUND_HALF_UP)


def round_percent(value: Decimal) -> Decimal:
    """Round a percentage to 2 decimal places, half-up"""
    return value.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Rounded to currency precision on construction, so only build Money at
    persistence or display boundaries.
    """
    amount: Decimal
    currency: Currency = Currency.MYR

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "RM 1,234.50"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        # "12,5" is a decimal comma, "1,234" a thousands separator
        parts = clean_value.split(',')
        if len(parts[1]) < 3:
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
