"""
Checked integer arithmetic over fixed-width ranges.

Python integers never overflow, so range limits of the persisted fields
(u16 percentages, u32 nonces, u64 amounts, i64 timestamps, u128
intermediates) are enforced here. Any result outside its range raises
ArithmeticOverflowError instead of wrapping.
"""

from __future__ import annotations

from vescrow.escrow.errors import ArithmeticOverflowError

U16_MAX = 2**16 - 1
U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1

_RANGES: dict[str, tuple[int, int]] = {
    "u16": (0, U16_MAX),
    "u32": (0, U32_MAX),
    "u64": (0, U64_MAX),
    "u128": (0, U128_MAX),
    "i64": (I64_MIN, I64_MAX),
    "i128": (-(2**127), 2**127 - 1),
}


def _check(value: int, bits: str, operation: str, *operands: int) -> int:
    low, high = _RANGES[bits]
    if value < low or value > high:
        raise ArithmeticOverflowError(operation, *operands, bits=bits)
    return value


def narrow(value: int, bits: str) -> int:
    """Narrow a widened intermediate into the target range."""
    return _check(value, bits, "narrow", value)


def checked_add(a: int, b: int, bits: str = "u64") -> int:
    return _check(a + b, bits, "add", a, b)


def checked_sub(a: int, b: int, bits: str = "u64") -> int:
    return _check(a - b, bits, "sub", a, b)


def checked_mul(a: int, b: int, bits: str = "u64") -> int:
    return _check(a * b, bits, "mul", a, b)


def checked_div(a: int, b: int, bits: str = "u64") -> int:
    """Truncating division of non-negative operands; division by zero raises."""
    if b == 0:
        raise ArithmeticOverflowError("div", a, b, bits=bits)
    _check(a, bits, "div", a, b)
    return _check(a // b, bits, "div", a, b)


def checked_sum(values, bits: str = "u64") -> int:
    """Fold values with checked addition, failing on the first overflow."""
    total = 0
    for value in values:
        total = checked_add(total, value, bits)
    return total
