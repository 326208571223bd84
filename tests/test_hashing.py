"""Tests for row key hashing."""

from __future__ import annotations

import uuid
import zlib
from datetime import date
from decimal import Decimal

import pytest

from replisync.hashing import (
    MAX_HASHES,
    combine,
    combine2,
    key_hash,
    to_int32,
    value_hash,
)


INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


# =============================================================================
# combine2
# =============================================================================


class TestCombine2:
    def test_fixed_point(self):
        assert combine2(17, 5) == ((17 << 5) + 17) ^ 5 == 564

    def test_order_sensitive(self):
        assert combine2(1, 2) == 35
        assert combine2(2, 1) == 67

    def test_wraps_to_int32(self):
        result = combine2(INT32_MAX, 0)
        assert INT32_MIN <= result <= INT32_MAX
        assert result == to_int32(INT32_MAX * 33)

    def test_negative_inputs(self):
        result = combine2(-1, -1)
        assert result == to_int32((-1 * 33) ^ -1)
        assert INT32_MIN <= result <= INT32_MAX


class TestToInt32:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, 0),
            (INT32_MAX, INT32_MAX),
            (INT32_MAX + 1, INT32_MIN),
            (2**32, 0),
            (-1, -1),
        ],
    )
    def test_wrapping(self, value, expected):
        assert to_int32(value) == expected


# =============================================================================
# combine
# =============================================================================


class TestCombine:
    def test_two(self):
        assert combine(17, 5) == 564

    def test_three(self):
        assert combine(1, 2, 3) == combine2(combine2(1, 2), 3)

    def test_four(self):
        assert combine(1, 2, 3, 4) == combine2(combine2(1, 2), combine2(3, 4))

    def test_five(self):
        assert combine(1, 2, 3, 4, 5) == combine2(combine(1, 2, 3, 4), 5)

    def test_six(self):
        assert combine(1, 2, 3, 4, 5, 6) == combine2(combine(1, 2, 3, 4), combine2(5, 6))

    def test_seven(self):
        expected = combine2(combine(1, 2, 3, 4), combine(5, 6, 7))
        assert combine(1, 2, 3, 4, 5, 6, 7) == expected

    def test_eight(self):
        expected = combine2(combine(1, 2, 3, 4), combine(5, 6, 7, 8))
        assert combine(1, 2, 3, 4, 5, 6, 7, 8) == expected

    @pytest.mark.parametrize("count", [0, 1, MAX_HASHES + 1])
    def test_out_of_range(self, count):
        with pytest.raises(ValueError):
            combine(*range(count))

    def test_order_sensitive(self):
        assert combine(1, 2, 3) != combine(3, 2, 1)


# =============================================================================
# Value and key hashes
# =============================================================================


class TestValueHash:
    def test_none_is_zero(self):
        assert value_hash(None) == 0

    def test_small_int_is_identity(self):
        assert value_hash(42) == 42

    def test_large_int_folds_high_bits(self):
        value = (7 << 32) | 3
        assert value_hash(value) == to_int32(value ^ 7)

    def test_string_is_crc32(self):
        assert value_hash("abc") == to_int32(zlib.crc32(b"abc"))

    def test_string_is_stable(self):
        assert value_hash("customer-1") == value_hash("customer-1")
        assert value_hash("customer-1") != value_hash("customer-2")

    def test_bytes(self):
        assert value_hash(b"\x00\x01") == to_int32(zlib.crc32(b"\x00\x01"))

    def test_bool(self):
        assert value_hash(True) == 1
        assert value_hash(False) == 0

    @pytest.mark.parametrize(
        "value",
        [uuid.UUID("12345678-1234-5678-1234-567812345678"), Decimal("1.50"), date(2024, 1, 2)],
    )
    def test_string_hashed_types(self, value):
        assert value_hash(value) == to_int32(zlib.crc32(str(value).encode("utf-8")))


class TestKeyHash:
    def test_single_key_is_value_hash(self):
        assert key_hash([42]) == 42
        assert key_hash(("abc",)) == value_hash("abc")

    def test_composite_key(self):
        assert key_hash([17, 5]) == 564

    def test_composite_key_with_strings(self):
        assert key_hash([1, "a"]) == combine2(1, value_hash("a"))

    def test_too_many_keys(self):
        with pytest.raises(ValueError, match="Too many key fields"):
            key_hash(list(range(MAX_HASHES + 1)))

    def test_no_keys(self):
        with pytest.raises(ValueError):
            key_hash([])
