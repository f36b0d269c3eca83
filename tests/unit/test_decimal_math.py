"""
Unit tests for decimal handling.

Verifies:
- Parsing accepts strings, ints and Decimals and rejects floats
- Rounding is ROUND_HALF_UP to 4 places
- Fixed-point string output
- Value equality ignores trailing zeros
"""

from decimal import Decimal

import pytest

from capital_kernel.domain.decimal_math import (
    add,
    decimals_equal,
    divide,
    fits_precision,
    is_negative,
    is_positive,
    multiply,
    parse_decimal,
    round_to,
    subtract,
    to_decimal_string,
    within_tolerance,
)
from capital_kernel.exceptions import InvalidDecimalError


class TestParseDecimal:
    """Tests for parse_decimal."""

    def test_string(self):
        assert parse_decimal("100.50") == Decimal("100.50")

    def test_int(self):
        assert parse_decimal(42) == Decimal("42")

    def test_decimal_passthrough(self):
        value = Decimal("3.14159")
        assert parse_decimal(value) is value

    def test_surrounding_whitespace_ignored(self):
        assert parse_decimal("  7.5 ") == Decimal("7.5")

    def test_negative(self):
        assert parse_decimal("-0.0001") == Decimal("-0.0001")

    @pytest.mark.parametrize("bad", ["", "   ", "abc", "1.2.3", "NaN", "Infinity"])
    def test_invalid_strings_rejected(self, bad):
        with pytest.raises(InvalidDecimalError):
            parse_decimal(bad)

    def test_float_rejected(self):
        """Floats have already lost precision; they are never accepted."""
        with pytest.raises(InvalidDecimalError):
            parse_decimal(0.1)

    def test_bool_rejected(self):
        with pytest.raises(InvalidDecimalError):
            parse_decimal(True)

    def test_error_names_field(self):
        with pytest.raises(InvalidDecimalError) as exc_info:
            parse_decimal("x", "contribution")
        assert exc_info.value.field == "contribution"
        assert exc_info.value.code == "INVALID_DECIMAL"


class TestArithmetic:
    """Tests for the arithmetic helpers."""

    def test_add_many(self):
        assert add(Decimal("0.1"), Decimal("0.2"), Decimal("0.3")) == Decimal("0.6")

    def test_add_empty_is_zero(self):
        assert add() == Decimal("0")

    def test_subtract(self):
        assert subtract(Decimal("10"), Decimal("0.0001")) == Decimal("9.9999")

    def test_multiply(self):
        assert multiply(Decimal("2.5"), Decimal("4")) == Decimal("10.0")

    def test_divide(self):
        assert divide(Decimal("1"), Decimal("4")) == Decimal("0.25")

    def test_divide_by_zero_raises(self):
        with pytest.raises(ZeroDivisionError):
            divide(Decimal("1"), Decimal("0"))

    def test_divide_keeps_twenty_significant_digits(self):
        result = divide(Decimal("1"), Decimal("3"))
        assert result == Decimal("0.33333333333333333333")

    def test_sign_predicates(self):
        assert is_positive(Decimal("0.0001"))
        assert not is_positive(Decimal("0"))
        assert is_negative(Decimal("-0.0001"))
        assert not is_negative(Decimal("0"))


class TestRounding:
    """Tests for round_to and to_decimal_string."""

    def test_half_up(self):
        assert round_to(Decimal("0.00005")) == Decimal("0.0001")

    def test_below_half_down(self):
        assert round_to(Decimal("0.00004999")) == Decimal("0.0000")

    def test_negative_half_up_away_from_zero(self):
        assert round_to(Decimal("-0.00005")) == Decimal("-0.0001")

    def test_custom_places(self):
        assert round_to(Decimal("1.005"), 2) == Decimal("1.01")

    def test_fixed_point_string(self):
        assert to_decimal_string(Decimal("632.91139240506")) == "632.9114"

    def test_fixed_point_pads_zeros(self):
        assert to_decimal_string(Decimal("5")) == "5.0000"

    def test_no_exponent_notation(self):
        assert to_decimal_string(Decimal("1E+3")) == "1000.0000"

    @pytest.mark.parametrize(
        "value",
        ["0", "9999999999999999.9999", "-9999999999999999.9999", "0.00001", "1E+15"],
    )
    def test_fits_precision(self, value):
        assert fits_precision(Decimal(value))

    @pytest.mark.parametrize(
        "value",
        ["1234567890123456789.1234", "9999999999999999.99995", "1E+16", "1E+30"],
    )
    def test_exceeds_precision(self, value):
        assert not fits_precision(Decimal(value))


class TestComparison:
    """Tests for value equality and tolerance."""

    def test_trailing_zeros_equal(self):
        assert decimals_equal("1.50", "1.5000")

    def test_decimal_and_string_equal(self):
        assert decimals_equal(Decimal("367.0886"), "367.08860")

    def test_different_values(self):
        assert not decimals_equal("1.5001", "1.5")

    def test_within_tolerance(self):
        assert within_tolerance(Decimal("1000"), Decimal("999.9999"))
        assert not within_tolerance(Decimal("1000"), Decimal("999.9998"))
