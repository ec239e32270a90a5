"""
Money Module

Fixed-point money for loan math. Amounts are Decimal, rounded half up to the
currency's minor unit on every construction. NEVER uses float.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from typing import Any, Dict
from enum import Enum

# Enough digits for (1 + r)^n over long terms
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 codes of the markets served, with minor unit digits"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    CAD = ("CAD", 2)  # Canadian Dollar
    JPY = ("JPY", 0)  # Japanese Yen
    KES = ("KES", 2)  # Kenyan Shilling
    NGN = ("NGN", 2)  # Nigerian Naira
    GHS = ("GHS", 2)  # Ghanaian Cedi
    UGX = ("UGX", 0)  # Ugandan Shilling
    INR = ("INR", 2)  # Indian Rupee

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD"""
        return Decimal(1).scaleb(-self.precision)


def quantize_amount(value: Decimal, currency: Currency) -> Decimal:
    """Round a raw Decimal half up to the currency's minor unit"""
    return value.quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


def _as_decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class Money:
    """
    Immutable amount in one currency

    Arithmetic and ordering between different currencies raise ValueError.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        object.__setattr__(self, 'amount', quantize_amount(_as_decimal(self.amount), self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _require_same(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._require_same(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._require_same(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Decimal) -> 'Money':
        return Money(self.amount * _as_decimal(factor), self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        return Money(self.amount / _as_decimal(divisor), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return (self.amount, self.currency) == (other.amount, other.currency)

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._require_same(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._require_same(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._require_same(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._require_same(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Display form, e.g. ``USD 1,234.50``"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> Dict[str, str]:
        return {'amount': str(self.amount), 'currency': self.currency.code}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Money':
        return cls(Decimal(data['amount']), Currency[data['currency']])
