"""Fixed-point arithmetic for the clearing engine.

Every amount, price and ratio is a plain Python ``int`` scaled by ``ONE``
(18 decimals). Rounding is explicit:

- ``mul_d`` / ``div_d`` floor toward -inf (Python ``//``),
- ``div_d_ceil`` rounds toward +inf and is used wherever the curve must not
  lose value to rounding (reserve recomputation after a swap).
"""

from __future__ import annotations

from decimal import Decimal, localcontext
from typing import Union

ONE: int = 10**18
DECIMALS: int = 18

# Funding premium fractions are expressed per this many seconds.
REFERENCE_PERIOD: int = 86_400

Number = Union[int, str, float, Decimal]


def _require_int(x: int, name: str) -> None:
    if not isinstance(x, int) or isinstance(x, bool):
        raise TypeError(f"{name} must be an int")


# -- Basic helpers -----------------------------------------------------------

def abs_val(x: int) -> int:
    """Absolute value of *x*."""
    return x if x >= 0 else -x


def sign(x: int) -> int:
    """-1, 0 or 1."""
    return (x > 0) - (x < 0)


def ceil_div(a: int, b: int) -> int:
    """Integer division rounding toward +inf (``b`` must be positive)."""
    if b <= 0:
        raise ValueError(f"divisor must be positive: {b}")
    return -((-a) // b)


def mul_d(a: int, b: int) -> int:
    """``a * b / ONE`` (floor)."""
    return (a * b) // ONE


def div_d(a: int, b: int) -> int:
    """``a * ONE / b`` (floor). ``b`` must be non-zero."""
    if b == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    if b < 0:
        return (-a * ONE) // -b
    return (a * ONE) // b


def div_d_ceil(a: int, b: int) -> int:
    """``a * ONE / b`` rounded toward +inf (``b`` must be positive)."""
    return ceil_div(a * ONE, b)


def mul_div(a: int, b: int, c: int) -> int:
    """``a * b / c`` (floor) without intermediate rescaling."""
    if c == 0:
        raise ZeroDivisionError("mul_div by zero")
    if c < 0:
        return (-a * b) // -c
    return (a * b) // c


# -- Conversions -------------------------------------------------------------

def to_fixed(value: Number) -> int:
    """Convert a decimal literal to an 18-decimal fixed-point int.

    Strings and Decimals are converted exactly; floats go through ``repr`` so
    ``0.1`` becomes ``10**17`` rather than its binary expansion. Digits beyond
    18 decimals are truncated toward zero.
    """
    if isinstance(value, bool):
        raise TypeError("bool is not a number")
    if isinstance(value, int):
        return value * ONE
    if isinstance(value, float):
        value = repr(value)
    with localcontext() as ctx:
        ctx.prec = 80
        d = Decimal(value) * ONE
    if not d.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return int(d)


def from_fixed(value: int) -> Decimal:
    """Inverse of ``to_fixed`` (exact)."""
    _require_int(value, "value")
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(value) / ONE
