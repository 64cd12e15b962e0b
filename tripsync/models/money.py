"""
Exact Monetary Values

Amounts are stored as an integer count of minor currency units (cents)
plus a currency code. All arithmetic happens on the integer representation.

DESIGN DECISION: Rounding is only allowed at explicit conversion boundaries:
1. Parsing decimal input into minor units (from_decimal)
2. Scaling by a decimal factor (scale)
3. Applying an exchange rate (convert)

All three round half-up. Everything else is exact, so values never drift
across merges, retries or duplicate delivery.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt


# Currencies whose minor unit is not 1/100 of the major unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})
THREE_DECIMAL_CURRENCIES = frozenset({
    "BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND",
})

DecimalInput = Union[Decimal, str, int]


class MoneyError(ValueError):
    """Base exception for monetary operations."""
    pass


class CurrencyMismatchError(MoneyError):
    """Two amounts in different currencies were combined."""

    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"Cannot combine {left} with {right}")


def currency_exponent(currency: str) -> int:
    """Number of decimal places of the currency's minor unit."""
    if currency in ZERO_DECIMAL_CURRENCIES:
        return 0
    if currency in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _to_decimal(amount: DecimalInput) -> Decimal:
    if isinstance(amount, float):
        raise TypeError("Floats are not accepted for money; pass a Decimal or a string")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(amount)
    except InvalidOperation:
        raise MoneyError(f"Not a decimal amount: {amount!r}")
    if not value.is_finite():
        raise MoneyError(f"Amount must be finite: {amount!r}")
    return value


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class MoneyValue(BaseModel):
    """
    An exact amount of money.

    Immutable and hashable. Equality is exact integer equality of the
    minor units plus the currency, so two values that print the same
    always compare equal.
    """
    model_config = ConfigDict(frozen=True)

    minor_units: StrictInt = Field(
        ...,
        description="Amount in the currency's smallest unit (e.g. cents)"
    )
    currency: str = Field(
        default="USD",
        pattern="^[A-Z]{3}$",
        description="Three-letter currency code"
    )

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def zero(cls, currency: str = "USD") -> "MoneyValue":
        return cls(minor_units=0, currency=currency)

    @classmethod
    def from_decimal(cls, amount: DecimalInput, currency: str = "USD") -> "MoneyValue":
        """
        Parse a decimal amount in major units (e.g. "12.345").

        Rounds half-up to the currency's minor unit. Floats are rejected
        because they already carry binary drift.
        """
        value = _to_decimal(amount)
        minor = _round_half_up(value.scaleb(currency_exponent(currency)))
        return cls(minor_units=minor, currency=currency)

    @classmethod
    def total(cls, values: Iterable["MoneyValue"], currency: str) -> "MoneyValue":
        """Sum values, starting from zero in the given currency."""
        result = cls.zero(currency)
        for value in values:
            result = result + value
        return result

    # -------------------------------------------------------------------------
    # Conversion boundaries
    # -------------------------------------------------------------------------

    def to_decimal(self) -> Decimal:
        return Decimal(self.minor_units).scaleb(-currency_exponent(self.currency))

    def scale(self, factor: DecimalInput) -> "MoneyValue":
        """Multiply by a decimal factor, rounding half-up to a minor unit."""
        product = Decimal(self.minor_units) * _to_decimal(factor)
        return MoneyValue(minor_units=_round_half_up(product), currency=self.currency)

    def convert(self, rate: DecimalInput, currency: str) -> "MoneyValue":
        """
        Convert into another currency at the given rate.

        The rate (units of `currency` per unit of this currency) is an input;
        looking it up is the caller's concern.
        """
        return MoneyValue.from_decimal(self.to_decimal() * _to_decimal(rate), currency)

    # -------------------------------------------------------------------------
    # Arithmetic
    # -------------------------------------------------------------------------

    def _check(self, other: object) -> "MoneyValue":
        if not isinstance(other, MoneyValue):
            raise TypeError(f"Expected MoneyValue, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency, other.currency)
        return other

    def __add__(self, other: "MoneyValue") -> "MoneyValue":
        other = self._check(other)
        return MoneyValue(minor_units=self.minor_units + other.minor_units, currency=self.currency)

    def __radd__(self, other: object) -> "MoneyValue":
        # Lets the builtin sum() start from its default 0
        if isinstance(other, int) and not isinstance(other, bool) and other == 0:
            return self
        return self._check(other) + self

    def __sub__(self, other: "MoneyValue") -> "MoneyValue":
        other = self._check(other)
        return MoneyValue(minor_units=self.minor_units - other.minor_units, currency=self.currency)

    def __neg__(self) -> "MoneyValue":
        return MoneyValue(minor_units=-self.minor_units, currency=self.currency)

    def __abs__(self) -> "MoneyValue":
        return MoneyValue(minor_units=abs(self.minor_units), currency=self.currency)

    def __mul__(self, factor: int) -> "MoneyValue":
        if isinstance(factor, bool) or not isinstance(factor, int):
            raise TypeError("MoneyValue can only be multiplied by an int; use scale() for decimals")
        return MoneyValue(minor_units=self.minor_units * factor, currency=self.currency)

    __rmul__ = __mul__

    def __divmod__(self, parts: int) -> tuple["MoneyValue", int]:
        """Floor quotient per part and the leftover minor units."""
        if isinstance(parts, bool) or not isinstance(parts, int):
            raise TypeError("MoneyValue can only be divided by an int")
        if parts == 0:
            raise ZeroDivisionError("Cannot divide money into zero parts")
        quotient, remainder = divmod(self.minor_units, parts)
        return MoneyValue(minor_units=quotient, currency=self.currency), remainder

    # -------------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------------

    def __lt__(self, other: "MoneyValue") -> bool:
        return self.minor_units < self._check(other).minor_units

    def __le__(self, other: "MoneyValue") -> bool:
        return self.minor_units <= self._check(other).minor_units

    def __gt__(self, other: "MoneyValue") -> bool:
        return self.minor_units > self._check(other).minor_units

    def __ge__(self, other: "MoneyValue") -> bool:
        return self.minor_units >= self._check(other).minor_units

    @property
    def is_zero(self) -> bool:
        return self.minor_units == 0

    @property
    def is_negative(self) -> bool:
        return self.minor_units < 0

    def __str__(self) -> str:
        places = currency_exponent(self.currency)
        return f"{self.to_decimal():.{places}f} {self.currency}"
