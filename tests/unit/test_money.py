"""Unit tests for Money and amount rounding."""

from decimal import Decimal

import pytest

from meterbill.services.errors import CurrencyMismatchError, InvalidInputError, NegativeAmountError
from meterbill.services.money import Money, quantize_amount, to_decimal


@pytest.mark.unit
class TestMoney:
    def test_float_input_goes_through_str(self):
        assert Money(0.1).amount == Decimal("0.1")
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_negative_amount_rejected(self):
        with pytest.raises(NegativeAmountError):
            Money(Decimal("-0.01"))

    def test_subtraction_below_zero_rejected(self):
        with pytest.raises(NegativeAmountError):
            Money("10") - Money("10.01")

    def test_non_finite_amount_rejected(self):
        with pytest.raises(InvalidInputError):
            Money(Decimal("NaN"))

    def test_garbage_amount_rejected(self):
        with pytest.raises(InvalidInputError):
            Money("twelve")

    def test_currency_is_upper_cased(self):
        assert Money("1", "usd").currency == "USD"

    def test_arithmetic_across_currencies_raises(self):
        with pytest.raises(CurrencyMismatchError):
            Money("1", "KES") + Money("1", "USD")
        with pytest.raises(CurrencyMismatchError):
            Money("1", "KES") < Money("2", "USD")

    def test_comparison_with_non_money_raises_type_error(self):
        with pytest.raises(TypeError):
            Money("1") < 2

    def test_multiply_and_round(self):
        amount = (Money("10") * Decimal("0.3333")).rounded(2)
        assert amount == Money("3.33")
        assert Money("10").rounded(2).amount == Decimal("10.00")

    def test_ordering_and_zero(self):
        assert Money("1.50") > Money("1.49")
        assert Money.zero().is_zero()
        assert Money("2") + Money("3") == Money("5")

    def test_format(self):
        assert Money("1234.5").format() == "1,234.50 KES"


@pytest.mark.unit
class TestQuantizeAmount:
    def test_round_half_up(self):
        assert quantize_amount(Decimal("2.345")) == Decimal("2.35")
        assert quantize_amount(Decimal("2.344")) == Decimal("2.34")

    def test_ceil_and_floor(self):
        assert quantize_amount(Decimal("3.331"), 2, "ceil") == Decimal("3.34")
        assert quantize_amount(Decimal("3.339"), 2, "floor") == Decimal("3.33")

    def test_precision_zero(self):
        assert quantize_amount(Decimal("10.5"), 0) == Decimal("11")

    def test_unknown_method(self):
        with pytest.raises(InvalidInputError) as exc_info:
            quantize_amount(Decimal("1"), 2, "banker")
        assert exc_info.value.field == "rounding_method"
