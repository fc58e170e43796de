"""
fixed.py - Non-negative fixed-point numbers for protocol accounting

Every money amount, price, rate and ratio in lendcore is a Fixed: a
non-negative rational with exactly 18 fractional digits, stored as an
integer scaled by 10**18 (a "WAD").

ROUNDING:
=========

Multiplication and division truncate toward zero. Because values are never
negative, truncation is floor. Converting to an integer token amount is
always explicit:

    amount.floor()  - amounts paid out to a user
    amount.ceil()   - amounts owed by a user

There is deliberately no __int__: a conversion without a rounding direction
is a bug waiting to happen.

SUBTRACTION:
============

    a - b                 raises ValueError if b > a
    a.saturating_sub(b)   clamps at zero

Use saturating_sub only where rounding slop between two independently
rounded sums can make the right-hand side marginally larger.

Example:
    price = Fixed.from_decimal("1.0005")
    value = Fixed.from_int(2_000_000) * price / Fixed.from_int(10**6)
    value.floor()  # 2
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Union


# ============================================================================
# CONSTANTS
# ============================================================================

WAD_DECIMALS = 18
WAD = 10 ** WAD_DECIMALS

_WAD_QUANTUM = Decimal(1).scaleb(-WAD_DECIMALS)

FixedLike = Union["Fixed", int]


@dataclass(frozen=True, slots=True, order=True)
class Fixed:
    """
    Immutable non-negative fixed-point value with 18 decimal places.

    Attributes:
        scaled: The value multiplied by 10**18 (must be a non-negative int).
    """
    scaled: int

    def __post_init__(self):
        if isinstance(self.scaled, bool) or not isinstance(self.scaled, int):
            raise ValueError(f"Fixed requires an int scaled value, got {type(self.scaled)}")
        if self.scaled < 0:
            raise ValueError(f"Fixed cannot be negative, got scaled={self.scaled}")

    # ------------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------------

    @classmethod
    def from_int(cls, value: int) -> Fixed:
        """Whole units: Fixed.from_int(5) == 5."""
        return cls(value * WAD)

    @classmethod
    def from_percent(cls, pct: int) -> Fixed:
        """Fixed.from_percent(80) == 0.8."""
        return cls(pct * WAD // 100)

    @classmethod
    def from_bps(cls, bps: int) -> Fixed:
        """Fixed.from_bps(10) == 0.001."""
        return cls(bps * WAD // 10_000)

    @classmethod
    def from_scaled(cls, scaled: int) -> Fixed:
        return cls(scaled)

    @classmethod
    def from_decimal(cls, value: Union[Decimal, str, int]) -> Fixed:
        """
        Convert a stdlib Decimal (or its string form) to Fixed.

        Digits beyond the 18th decimal place are truncated.

        Raises:
            ValueError: if the value is negative, NaN or infinite.
        """
        if isinstance(value, float):
            raise ValueError("Fixed does not accept float input; pass a str or Decimal")
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if value.is_nan() or value.is_infinite():
            raise ValueError(f"Fixed must be finite, got {value}")
        if value < 0:
            raise ValueError(f"Fixed cannot be negative, got {value}")
        with localcontext() as ctx:
            ctx.prec = 100
            truncated = value.quantize(_WAD_QUANTUM, rounding=ROUND_DOWN)
            return cls(int(truncated.scaleb(WAD_DECIMALS)))

    # ------------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------------

    def __add__(self, other: FixedLike) -> Fixed:
        return Fixed(self.scaled + _coerce(other).scaled)

    __radd__ = __add__

    def __sub__(self, other: FixedLike) -> Fixed:
        rhs = _coerce(other)
        if rhs.scaled > self.scaled:
            raise ValueError(f"Fixed subtraction underflow: {self} - {rhs}")
        return Fixed(self.scaled - rhs.scaled)

    def saturating_sub(self, other: FixedLike) -> Fixed:
        rhs = _coerce(other)
        if rhs.scaled >= self.scaled:
            return ZERO
        return Fixed(self.scaled - rhs.scaled)

    def __mul__(self, other: FixedLike) -> Fixed:
        return Fixed(self.scaled * _coerce(other).scaled // WAD)

    __rmul__ = __mul__

    def __truediv__(self, other: FixedLike) -> Fixed:
        rhs = _coerce(other)
        if rhs.scaled == 0:
            raise ZeroDivisionError("Fixed division by zero")
        return Fixed(self.scaled * WAD // rhs.scaled)

    def pow(self, exponent: int) -> Fixed:
        """
        Raise to a non-negative integer power by repeated squaring.

        Each intermediate product truncates, so for a base >= 1 the result
        is never below 1 and never above the exact power.
        """
        if exponent < 0:
            raise ValueError(f"Fixed.pow requires a non-negative exponent, got {exponent}")
        result = ONE
        base = self
        while exponent > 0:
            if exponent % 2 == 1:
                result = result * base
            base = base * base
            exponent //= 2
        return result

    # ------------------------------------------------------------------------
    # Integer conversion (rounding direction is always explicit)
    # ------------------------------------------------------------------------

    def floor(self) -> int:
        return self.scaled // WAD

    def ceil(self) -> int:
        return -(-self.scaled // WAD)

    # ------------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------------

    def is_zero(self) -> bool:
        return self.scaled == 0

    def to_decimal(self) -> Decimal:
        """Exact stdlib Decimal representation (for display and reporting)."""
        return Decimal(self.scaled).scaleb(-WAD_DECIMALS)

    def __bool__(self) -> bool:
        return self.scaled != 0

    def __str__(self) -> str:
        d = self.to_decimal().normalize()
        return format(d, 'f')

    def __repr__(self) -> str:
        return f"Fixed({self})"


def _coerce(value: FixedLike) -> Fixed:
    if isinstance(value, Fixed):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return Fixed.from_int(value)
    raise TypeError(f"Cannot combine Fixed with {type(value).__name__}")


ZERO = Fixed(0)
ONE = Fixed(WAD)
