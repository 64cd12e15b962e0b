"""Tests for the exact money primitive."""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tripsync.models.money import (
    CurrencyMismatchError,
    MoneyError,
    MoneyValue,
    currency_exponent,
)


class TestConstruction:
    """Parsing decimal input into minor units."""

    def test_from_decimal_string(self):
        """Test that a decimal string is stored as integer cents."""
        value = MoneyValue.from_decimal("12.34", "USD")
        assert value.minor_units == 1234
        assert value.currency == "USD"

    def test_from_decimal_rounds_half_up(self):
        """Test that sub-cent input rounds half-up at the parse boundary."""
        assert MoneyValue.from_decimal("0.005").minor_units == 1
        assert MoneyValue.from_decimal("0.004").minor_units == 0
        assert MoneyValue.from_decimal("-0.005").minor_units == -1

    def test_zero_decimal_currency(self):
        """Test that JPY has no minor unit."""
        assert currency_exponent("JPY") == 0
        assert MoneyValue.from_decimal("1500", "JPY").minor_units == 1500
        assert MoneyValue.from_decimal("1500.5", "JPY").minor_units == 1501

    def test_three_decimal_currency(self):
        """Test that KWD uses three decimal places."""
        assert MoneyValue.from_decimal("1.2345", "KWD").minor_units == 1235

    def test_float_rejected(self):
        """Test that floats are refused because they already carry drift."""
        with pytest.raises(TypeError):
            MoneyValue.from_decimal(0.1)

    def test_garbage_rejected(self):
        """Test that non-numeric input raises MoneyError."""
        with pytest.raises(MoneyError):
            MoneyValue.from_decimal("twelve")
        with pytest.raises(MoneyError):
            MoneyValue.from_decimal("Infinity")

    def test_currency_code_validated(self):
        """Test that the currency must be a three-letter upper-case code."""
        with pytest.raises(ValueError):
            MoneyValue(minor_units=1, currency="usd")

    def test_minor_units_must_be_int(self):
        """Test that minor units are not coerced from strings or floats."""
        with pytest.raises(ValueError):
            MoneyValue(minor_units=1.5)


class TestArithmetic:
    """Integer arithmetic and currency safety."""

    def test_add_and_subtract(self):
        a = MoneyValue(minor_units=1000)
        b = MoneyValue(minor_units=250)
        assert (a + b).minor_units == 1250
        assert (a - b).minor_units == 750
        assert (b - a).is_negative

    def test_currency_mismatch(self):
        """Test that mixing currencies raises instead of guessing a rate."""
        with pytest.raises(CurrencyMismatchError):
            MoneyValue(minor_units=1, currency="USD") + MoneyValue(minor_units=1, currency="EUR")

    def test_builtin_sum(self):
        """Test that sum() works from its default start of 0."""
        values = [MoneyValue(minor_units=n) for n in (1, 2, 3)]
        assert sum(values).minor_units == 6

    def test_total_of_nothing_is_zero(self):
        assert MoneyValue.total([], "EUR") == MoneyValue.zero("EUR")

    def test_multiply_by_int_only(self):
        """Test that decimal factors must go through scale()."""
        value = MoneyValue(minor_units=333)
        assert (value * 3).minor_units == 999
        assert (3 * value).minor_units == 999
        with pytest.raises(TypeError):
            value * Decimal("1.5")

    def test_divmod(self):
        """Test integer division returns quotient and leftover units."""
        quotient, remainder = divmod(MoneyValue(minor_units=100), 3)
        assert quotient.minor_units == 33
        assert remainder == 1

    def test_divmod_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            divmod(MoneyValue(minor_units=100), 0)

    def test_scale_rounds_half_up(self):
        """Test that scaling is a rounding boundary."""
        assert MoneyValue(minor_units=125).scale(Decimal("0.5")).minor_units == 63
        assert MoneyValue(minor_units=100).scale("0.333").minor_units == 33

    def test_convert(self):
        """Test applying an exchange rate into another currency."""
        eur = MoneyValue.from_decimal("10.00", "EUR")
        jpy = eur.convert(Decimal("161.235"), "JPY")
        assert jpy == MoneyValue(minor_units=1612, currency="JPY")

    def test_comparisons(self):
        small = MoneyValue(minor_units=1)
        large = MoneyValue(minor_units=2)
        assert small < large
        assert large >= small
        assert not small > large

    def test_equality_is_exact(self):
        """Test that values parsed differently but equal in cents compare equal."""
        assert MoneyValue.from_decimal("1.10") == MoneyValue.from_decimal("1.1")
        assert hash(MoneyValue.from_decimal("1.10")) == hash(MoneyValue(minor_units=110))

    def test_str(self):
        assert str(MoneyValue(minor_units=1234)) == "12.34 USD"
        assert str(MoneyValue(minor_units=-5)) == "-0.05 USD"
        assert str(MoneyValue(minor_units=1500, currency="JPY")) == "1500 JPY"

    def test_json_round_trip(self):
        """Test that the payload form is plain integers and strings."""
        value = MoneyValue(minor_units=4200, currency="EUR")
        dumped = value.model_dump(mode="json")
        assert dumped == {"minor_units": 4200, "currency": "EUR"}
        assert MoneyValue.model_validate(dumped) == value


class TestMoneyProperties:
    """Property-based checks on the integer representation."""

    @given(st.integers(min_value=-10**12, max_value=10**12), st.integers(min_value=-10**12, max_value=10**12))
    def test_add_then_subtract_is_identity(self, a, b):
        """
        PROPERTY: (a + b) - b == a exactly, for any amounts.
        """
        left = MoneyValue(minor_units=a)
        right = MoneyValue(minor_units=b)
        assert (left + right) - right == left

    @given(st.integers(min_value=-10**9, max_value=10**9), st.integers(min_value=1, max_value=1000))
    def test_divmod_reconstructs(self, units, parts):
        """
        PROPERTY: quotient * parts + remainder == original.
        """
        quotient, remainder = divmod(MoneyValue(minor_units=units), parts)
        assert quotient.minor_units * parts + remainder == units
