"""
Tests for checked fixed-width arithmetic.

Validates:
- Range enforcement per width
- Typed overflow errors carrying operation and operands
- Truncating division and division by zero
"""

from __future__ import annotations

import pytest

from vescrow.escrow.checked import (
    I64_MAX,
    I64_MIN,
    U16_MAX,
    U64_MAX,
    U128_MAX,
    checked_add,
    checked_div,
    checked_mul,
    checked_sub,
    checked_sum,
    narrow,
)
from vescrow.escrow.errors import ArithmeticOverflowError, EscrowError


class TestCheckedArithmetic:

    def test_add_within_range(self):
        assert checked_add(U64_MAX - 1, 1) == U64_MAX

    def test_add_overflow_u64(self):
        with pytest.raises(ArithmeticOverflowError) as exc:
            checked_add(U64_MAX, 1)
        assert exc.value.operation == "add"
        assert exc.value.operands == (U64_MAX, 1)
        assert exc.value.bits == "u64"

    def test_overflow_is_an_escrow_error(self):
        with pytest.raises(EscrowError):
            checked_mul(U64_MAX, 2)

    def test_sub_underflow(self):
        with pytest.raises(ArithmeticOverflowError):
            checked_sub(0, 1)

    def test_signed_range(self):
        assert checked_sub(0, 1, "i64") == -1
        with pytest.raises(ArithmeticOverflowError):
            checked_add(I64_MAX, 1, "i64")
        with pytest.raises(ArithmeticOverflowError):
            checked_sub(I64_MIN, 1, "i64")

    def test_u128_intermediates(self):
        product = checked_mul(U64_MAX, U64_MAX, "u128")
        assert product == U64_MAX * U64_MAX
        assert product <= U128_MAX
        with pytest.raises(ArithmeticOverflowError):
            checked_mul(U64_MAX, U64_MAX)

    def test_div_truncates(self):
        assert checked_div(7, 2) == 3
        assert checked_div(1, 3) == 0

    def test_div_by_zero(self):
        with pytest.raises(ArithmeticOverflowError) as exc:
            checked_div(5, 0)
        assert exc.value.operation == "div"

    def test_narrow(self):
        assert narrow(U16_MAX, "u16") == U16_MAX
        with pytest.raises(ArithmeticOverflowError):
            narrow(U16_MAX + 1, "u16")
        with pytest.raises(ArithmeticOverflowError):
            narrow(-1, "u64")

    def test_sum(self):
        assert checked_sum([1, 2, 3]) == 6
        assert checked_sum([]) == 0
        with pytest.raises(ArithmeticOverflowError):
            checked_sum([U64_MAX, 0, 1])
