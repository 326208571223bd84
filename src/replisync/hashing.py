"""Deterministic hash combination for row identity keys.

Rows are reloaded fresh every cycle, so the error ledger cannot track them by
object identity. Instead each row is fingerprinted by the hash of its key
values. The combiner here is order-sensitive and stable across processes for
ints, strings and bytes. It is not a cryptographic hash.

Example:
    >>> combine2(17, 5)
    564
    >>> combine(17, 5, 3) == combine2(combine2(17, 5), 3)
    True
"""

from __future__ import annotations

import uuid
import zlib
from collections.abc import Sequence
from datetime import date, time
from decimal import Decimal
from typing import Any

MIN_HASHES = 2
MAX_HASHES = 8

# hashed through their string form; datetime is a subclass of date
_STRING_HASHED = (uuid.UUID, Decimal, date, time)


def to_int32(value: int) -> int:
    """Wrap an arbitrary int into signed 32-bit two's complement."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def combine2(h1: int, h2: int) -> int:
    """Combine two hashes: ``((h1 << 5) + h1) ^ h2`` in int32 arithmetic."""
    return to_int32(((h1 << 5) + h1) ^ h2)


def _combine3(h1: int, h2: int, h3: int) -> int:
    return combine2(combine2(h1, h2), h3)


def _combine4(h1: int, h2: int, h3: int, h4: int) -> int:
    return combine2(combine2(h1, h2), combine2(h3, h4))


def combine(*hashes: int) -> int:
    """Combine 2 to 8 hashes into one.

    The first four hashes are always folded together, then combined with
    the fold of the rest, so the result depends on argument order.

    Raises:
        ValueError: If fewer than 2 or more than 8 hashes are given.
    """
    count = len(hashes)
    if count == 2:
        return combine2(*hashes)
    if count == 3:
        return _combine3(*hashes)
    if count == 4:
        return _combine4(*hashes)
    if count == 5:
        return combine2(_combine4(*hashes[:4]), hashes[4])
    if count == 6:
        return combine2(_combine4(*hashes[:4]), combine2(*hashes[4:]))
    if count == 7:
        return combine2(_combine4(*hashes[:4]), _combine3(*hashes[4:]))
    if count == 8:
        return combine2(_combine4(*hashes[:4]), _combine4(*hashes[4:]))
    raise ValueError(f"Must pass between {MIN_HASHES} and {MAX_HASHES} hashes, got {count}")


def value_hash(value: Any) -> int:
    """Return a process-independent int32 hash for a single key value."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return to_int32(value ^ (value >> 32))
    if isinstance(value, str):
        return to_int32(zlib.crc32(value.encode("utf-8")))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return to_int32(zlib.crc32(bytes(value)))
    if isinstance(value, _STRING_HASHED):
        return to_int32(zlib.crc32(str(value).encode("utf-8")))
    return to_int32(hash(value))


def key_hash(values: Sequence[Any]) -> int:
    """Fingerprint a row by its key values.

    Raises:
        ValueError: If there are no key values or more than 8.
    """
    if not values:
        raise ValueError("Cannot hash a row without key values")
    if len(values) == 1:
        return value_hash(values[0])
    if len(values) > MAX_HASHES:
        raise ValueError("Too many key fields to combine hashes")
    return combine(*(value_hash(v) for v in values))
