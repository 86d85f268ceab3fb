"""
Money Module

ISO 4217 currencies with their precision and an immutable Money value.
NEVER uses float for monetary values: amounts coming from JSON or forms go
through ``parse_amount``.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Any
from enum import Enum
import re

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
MAX_AMOUNT = Decimal("1000000000000")

AMOUNT_PATTERN = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def _check_currency(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} vs {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def quantize(value: Decimal) -> Decimal:
    """Round to cents"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Turn user input into a positive, two-decimal Decimal.

    Accepts Decimal, int, str ("5,000.00", "$5000", "1e3") and floats decoded
    from JSON (converted through ``str`` so no binary float leaks into the
    ledger). Thousands separators, whitespace and one leading currency symbol
    are dropped; any other stray character makes the value invalid.

    Raises:
        ValidationError: if the value is missing, not a number, not positive
            or above ``MAX_AMOUNT``
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        clean_value = re.sub(r'[\s,]', '', value)
        clean_value = re.sub(r'^[$€£]', '', clean_value)
        if not AMOUNT_PATTERN.fullmatch(clean_value):
            raise ValidationError(f"Invalid {field}: {value!r}")
        try:
            amount = Decimal(clean_value)
        except InvalidOperation:
            raise ValidationError(f"Invalid {field}: {value!r}")
    else:
        raise ValidationError(f"Invalid {field}: {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} exceeds the maximum of {MAX_AMOUNT:,}")
    try:
        exact = amount == amount.quantize(CENT)
    except InvalidOperation:
        raise ValidationError(f"Invalid {field}: {value!r}")
    if not exact:
        raise ValidationError(f"{field} cannot have more than two decimal places")

    return quantize(amount)
