"""
Unit tests for Fixed - non-negative 18-decimal fixed-point arithmetic.

Tests cover:
- Construction from ints, percents, basis points and decimals
- Truncating multiplication and division
- Explicit floor / ceil conversion
- Rejection of negatives, floats and mixed types
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lendcore import Fixed, ONE, ZERO, WAD


class TestConstruction:

    def test_from_int(self):
        assert Fixed.from_int(5).scaled == 5 * WAD

    def test_from_percent(self):
        assert Fixed.from_percent(80).scaled == 8 * 10 ** 17

    def test_from_bps(self):
        assert Fixed.from_bps(10).scaled == 10 ** 15

    def test_from_decimal_string(self):
        assert Fixed.from_decimal("1.5").scaled == 15 * 10 ** 17

    def test_from_decimal_truncates_beyond_18_places(self):
        assert Fixed.from_decimal("0.1234567890123456789").scaled == 123456789012345678

    def test_from_decimal_accepts_decimal(self):
        assert Fixed.from_decimal(Decimal("2.25")) == Fixed.from_int(9) / 4

    def test_rejects_negative_scaled(self):
        with pytest.raises(ValueError):
            Fixed(-1)

    def test_rejects_negative_decimal(self):
        with pytest.raises(ValueError):
            Fixed.from_decimal("-0.5")

    def test_rejects_float(self):
        with pytest.raises(ValueError):
            Fixed.from_decimal(0.5)

    def test_rejects_nan_and_infinity(self):
        with pytest.raises(ValueError):
            Fixed.from_decimal("NaN")
        with pytest.raises(ValueError):
            Fixed.from_decimal("Infinity")

    def test_rejects_bool_scaled(self):
        with pytest.raises(ValueError):
            Fixed(True)

    def test_constants(self):
        assert ZERO.scaled == 0
        assert ONE == Fixed.from_int(1)


class TestArithmetic:

    def test_add_and_int_coercion(self):
        assert Fixed.from_int(2) + 3 == Fixed.from_int(5)
        assert 3 + Fixed.from_int(2) == Fixed.from_int(5)

    def test_sub_underflow_raises(self):
        with pytest.raises(ValueError):
            Fixed.from_int(1) - Fixed.from_int(2)

    def test_saturating_sub_clamps(self):
        assert Fixed.from_int(1).saturating_sub(Fixed.from_int(2)) == ZERO
        assert Fixed.from_int(3).saturating_sub(1) == Fixed.from_int(2)

    def test_mul_truncates(self):
        smallest = Fixed(1)
        assert smallest * smallest == ZERO

    def test_div_truncates(self):
        assert (ONE / 3).scaled == 333333333333333333

    def test_div_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            ONE / ZERO

    def test_pow(self):
        assert Fixed.from_int(2).pow(10) == Fixed.from_int(1024)
        assert Fixed.from_decimal("1.5").pow(0) == ONE

    def test_pow_negative_exponent(self):
        with pytest.raises(ValueError):
            ONE.pow(-1)

    def test_mixing_with_float_raises(self):
        with pytest.raises(TypeError):
            ONE + 1.5

    def test_mixing_with_bool_raises(self):
        with pytest.raises(TypeError):
            ONE * True


class TestConversion:

    def test_floor_and_ceil(self):
        value = Fixed.from_decimal("2.5")
        assert value.floor() == 2
        assert value.ceil() == 3

    def test_ceil_of_whole_number(self):
        assert Fixed.from_int(2).ceil() == 2
        assert ZERO.ceil() == 0

    def test_no_implicit_int(self):
        with pytest.raises(TypeError):
            int(ONE)

    def test_str(self):
        assert str(Fixed.from_decimal("1.50")) == "1.5"
        assert str(ZERO) == "0"
        assert str(Fixed.from_int(1024)) == "1024"

    def test_repr(self):
        assert repr(Fixed.from_decimal("0.25")) == "Fixed(0.25)"

    def test_to_decimal_is_exact(self):
        assert Fixed(1).to_decimal() == Decimal("1E-18")

    def test_ordering_and_hashing(self):
        values = [Fixed.from_int(3), ONE, Fixed.from_decimal("1.5")]
        assert sorted(values) == [ONE, Fixed.from_decimal("1.5"), Fixed.from_int(3)]
        assert len({ONE, Fixed.from_int(1), Fixed(WAD)}) == 1

    def test_truthiness(self):
        assert not ZERO
        assert Fixed(1)


scaled_values = st.integers(min_value=0, max_value=10 ** 30)


class TestProperties:

    @given(a=scaled_values, b=scaled_values)
    @settings(max_examples=200)
    def test_add_then_sub_is_identity(self, a, b):
        """PROPERTY: (x + y) - y == x exactly."""
        x, y = Fixed(a), Fixed(b)
        assert (x + y) - y == x

    @given(a=scaled_values, b=scaled_values)
    @settings(max_examples=200)
    def test_mul_never_exceeds_exact_product(self, a, b):
        """PROPERTY: truncating multiplication rounds down by less than one unit."""
        product = (Fixed(a) * Fixed(b)).scaled * WAD
        assert product <= a * b < product + WAD

    @given(a=scaled_values)
    @settings(max_examples=200)
    def test_floor_ceil_bracket(self, a):
        """PROPERTY: floor <= value <= ceil, and they differ by at most one."""
        x = Fixed(a)
        assert x.floor() * WAD <= a <= x.ceil() * WAD
        assert x.ceil() - x.floor() in (0, 1)

    @given(a=st.integers(min_value=WAD, max_value=2 * WAD), e=st.integers(min_value=0, max_value=64))
    @settings(max_examples=100)
    def test_pow_of_growth_factor_never_below_one(self, a, e):
        """PROPERTY: a base >= 1 raised to any power stays >= 1."""
        assert Fixed(a).pow(e) >= ONE
