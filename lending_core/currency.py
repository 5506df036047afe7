"""
Currency and Money Module

Loan principal, weekly payments, fees and balances are Money values backed
by Decimal and rounded half up to cents. The payment processor works in
integer cents, so conversions to and from minor units live here too.
Floats are never used for amounts.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Union

getcontext().prec = 28


class Currency(Enum):
    """Supported currencies as (ISO code, decimal places)"""
    USD = ("USD", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-self.precision)

    @property
    def minor_unit_factor(self) -> Decimal:
        """Minor units per major unit (100 cents per dollar)"""
        return Decimal(1).scaleb(self.precision)


def round_money(value: Decimal, currency: Currency = Currency.USD) -> Decimal:
    """Round a raw Decimal half up to the currency's minor unit"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


@total_ordering
@dataclass(frozen=True)
class Money:
    """Amount in a currency, always held at the currency's precision"""
    amount: Decimal
    currency: Currency = Currency.USD

    def __post_init__(self):
        raw = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        object.__setattr__(self, 'amount', round_money(raw, self.currency))

    @classmethod
    def zero(cls, currency: Currency = Currency.USD) -> 'Money':
        return cls(Decimal(0), currency)

    @classmethod
    def from_minor_units(cls, minor_units: int, currency: Currency = Currency.USD) -> 'Money':
        """Money from processor cents, e.g. 18550 -> 185.50"""
        return cls(Decimal(int(minor_units)).scaleb(-currency.precision), currency)

    def to_minor_units(self) -> int:
        """Integer cents for the payment processor"""
        return int(self.amount.scaleb(self.currency.precision).to_integral_value(rounding=ROUND_HALF_UP))

    def _same_currency(self, other: 'Money', action: str) -> None:
        if self.currency is not other.currency:
            raise ValueError(f"Cannot {action} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._same_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._same_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Union[Decimal, int]) -> 'Money':
        return Money(self.amount * Decimal(str(factor)), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return (self.amount, self.currency) == (other.amount, other.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._same_currency(other, "compare")
        return self.amount < other.amount

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Display form used in invoice descriptions and logs, e.g. '$1,234.50'"""
        return f"${self.amount:,.{self.currency.precision}f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Parse an amount as typed by a person or sent over the API

    Dollar signs, thousands separators and surrounding whitespace are
    ignored, so "$1,234.50" parses as Decimal('1234.50').

    Raises:
        ValueError: If value is empty or not a number
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Value must be a non-empty string")

    cleaned = value.strip().replace("$", "").replace(",", "")
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not parsed.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return parsed
