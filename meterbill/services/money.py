"""Immutable fixed-precision monetary amount."""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from meterbill.services.errors import CurrencyMismatchError, InvalidInputError, NegativeAmountError

# Rounding methods recognised by the billing configuration
ROUNDING_MODES = {
    "round": ROUND_HALF_UP,
    "ceil": ROUND_CEILING,
    "floor": ROUND_FLOOR,
}

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal going through str so floats do not leak binary noise."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidInputError(f"Not a valid amount: {value!r}") from e


def quantize_amount(value: Number, precision: int = 2, method: str = "round") -> Decimal:
    """Round value to `precision` decimal places using a configured rounding method."""
    try:
        rounding = ROUNDING_MODES[str(getattr(method, "value", method))]
    except KeyError as e:
        raise InvalidInputError(f"Unknown rounding method: {method}", field="rounding_method") from e
    return to_decimal(value).quantize(Decimal(1).scaleb(-precision), rounding=rounding)


@dataclass(frozen=True)
class Money:
    """Non-negative amount tagged with a currency.

    Arithmetic and ordering across currencies raise CurrencyMismatchError;
    construction (including the result of a subtraction) below zero raises
    NegativeAmountError.
    """

    amount: Decimal
    currency: str = "KES"

    def __post_init__(self) -> None:
        amount = to_decimal(self.amount)
        if not amount.is_finite():
            raise InvalidInputError(f"Money amount must be finite, got {amount}")
        if amount < 0:
            raise NegativeAmountError(f"Money amount cannot be negative: {amount}")
        if not self.currency:
            raise InvalidInputError("Currency code is required", field="currency")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = "KES") -> "Money":
        return cls(Decimal("0"), currency)

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(
                f"Cannot combine money in different currencies: {self.currency} vs {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Number) -> "Money":
        return Money(self.amount * to_decimal(factor), self.currency)

    __rmul__ = __mul__

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def rounded(self, precision: int = 2, method: str = "round") -> "Money":
        return Money(quantize_amount(self.amount, precision, method), self.currency)

    def format(self) -> str:
        return f"{self.amount:,.2f} {self.currency}"

    def __str__(self) -> str:
        return self.format()


__all__ = ["Money", "ROUNDING_MODES", "quantize_amount", "to_decimal"]
