"""
Currency and Money Module

ISO 4217 currency codes and an immutable Money type with fixed-point Decimal
arithmetic. Every arithmetic result is quantised to the currency precision,
so ledger amounts never carry floating remainders. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    KES = ("KES", 2)  # Kenyan Shilling, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. Decimal('0.01')"""
        return Decimal('0.1') ** self.precision


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """
    Convert a number to Decimal without going through binary floating point

    Raises:
        ValueError: If the value cannot be represented as a Decimal
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary fields of the ledger use this class.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        # Round to currency precision after every construction
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        divisor = to_decimal(divisor)
        if divisor == Decimal('0'):
            raise ZeroDivisionError("Cannot divide Money by zero")
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def money_min(first: Money, second: Money) -> Money:
    return first if first <= second else second


def money_max(first: Money, second: Money) -> Money:
    return first if first >= second else second


def money_sum(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, rounding after each addition"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def level_share(total: Money, parts: int) -> Money:
    """total / parts truncated to the currency unit; parts - 1 shares never exceed total"""
    share = (total.amount / Decimal(parts)).quantize(total.currency.quantum, rounding=ROUND_DOWN)
    return Money(share, total.currency)
