"""
fixed_point.py - Checked Integer Arithmetic

Python ints never wrap, so the fixed-width behaviour of the on-chain
accounting is modelled explicitly: every helper checks its result against an
unsigned bound and raises ArithmeticOverflow instead of truncating.

Bounds:
    U64_MAX   token amounts, share counts, market totals
    U128_MAX  rates, indices, exchange rates
    U256_MAX  widened intermediate of a multiply-before-divide

Division always floors. The only rounding-up helper is mul_div_ceil, used
where the protocol must never under-collect (shares burned on seizure).
"""

from __future__ import annotations

from .core import ArithmeticOverflow


U64_MAX = 2 ** 64 - 1
U128_MAX = 2 ** 128 - 1
U256_MAX = 2 ** 256 - 1


def _check(value: int, bound: int, op: str) -> int:
    if value < 0:
        raise ArithmeticOverflow(f"{op} underflow: result {value} is negative")
    if value > bound:
        raise ArithmeticOverflow(f"{op} overflow: result exceeds {bound}")
    return value


def checked(value: int, bound: int = U64_MAX) -> int:
    """Assert an existing value fits in [0, bound]."""
    return _check(value, bound, "range")


def checked_add(a: int, b: int, bound: int = U64_MAX) -> int:
    return _check(a + b, bound, "add")


def checked_sub(a: int, b: int, bound: int = U64_MAX) -> int:
    return _check(a - b, bound, "sub")


def checked_mul(a: int, b: int, bound: int = U64_MAX) -> int:
    return _check(a * b, bound, "mul")


def checked_div(a: int, b: int, bound: int = U64_MAX) -> int:
    if b == 0:
        raise ArithmeticOverflow("division by zero")
    return _check(a // b, bound, "div")


def mul_div(a: int, b: int, c: int, bound: int = U64_MAX) -> int:
    """
    floor(a * b / c) with a 256-bit widened intermediate.

    Raises:
        ArithmeticOverflow: on division by zero, an intermediate above
            U256_MAX, or a result outside [0, bound]
    """
    if c == 0:
        raise ArithmeticOverflow("division by zero")
    product = _check(a * b, U256_MAX, "mul")
    return _check(product // c, bound, "mul_div")


def mul_div_ceil(a: int, b: int, c: int, bound: int = U64_MAX) -> int:
    if c == 0:
        raise ArithmeticOverflow("division by zero")
    product = _check(a * b, U256_MAX, "mul")
    return _check(-(-product // c), bound, "mul_div")

