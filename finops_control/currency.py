"""
Currency Support Module

ISO 4217 currency codes with their minor-unit precision, plus the Decimal
helpers the ledger uses for amounts and balance tolerance. NEVER uses float
for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen
    CAD = ("CAD", 2)  # Canadian Dollar
    CHF = ("CHF", 2)  # Swiss Franc
    KES = ("KES", 2)  # Kenyan Shilling
    UGX = ("UGX", 0)  # Ugandan Shilling
    INR = ("INR", 2)  # Indian Rupee
    BHD = ("BHD", 3)  # Bahraini Dinar

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by ISO code"""
        try:
            return cls[str(code).upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency code '{code}'")

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD"""
        return Decimal('0.1') ** self.precision

    @property
    def balance_tolerance(self) -> Decimal:
        """One hundredth of the minor unit"""
        return self.minor_unit / Decimal('100')

    def quantize(self, value: Decimal) -> Decimal:
        """Round to currency precision"""
        return value.quantize(self.minor_unit, rounding=ROUND_HALF_UP)

    def format(self, value: Decimal) -> str:
        """Format an amount at currency precision, without symbol"""
        return f"{self.quantize(value):.{self.precision}f}"


def to_decimal(value: Any) -> Decimal:
    """
    Convert an amount from API or storage form to Decimal

    Floats go through ``str`` so 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Cannot convert '{value}' to an amount")
    if not result.is_finite():
        raise ValidationError(f"Amount must be a finite number, got '{value}'")
    return result
