"""Success and failure bookkeeping for the replication engine.

Two pieces of state back the resumable fan-out:

- ``SuccessMap``: per cycle and entity type, the bitmask of targets each
  loaded row has reached so far. Target tasks race to update the same rows,
  so every update is a commutative bitwise OR merge.
- ``ErrorLedger``: process-wide consecutive-failure counts per
  ``(row key hash, target index)``. It outlives cycles (rows are reloaded
  every cycle, hence the key hash) and lets the engine stop retrying rows
  that keep failing against one target.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from typing import Any

DEFAULT_ERROR_THRESHOLD = 3


class SuccessMap:
    """Row to accumulated success bitmask, keyed by row object identity.

    Rows are allocated once per cycle and shared by reference between target
    tasks, so identity is a stable key within a cycle. The map holds a
    reference to each row to keep identities from being reused.
    """

    def __init__(self) -> None:
        self._flags: dict[int, int] = {}
        self._rows: dict[int, Any] = {}
        self._lock = threading.Lock()

    def seed(self, row: Any, status: int) -> None:
        """Record the on-disk status of a freshly loaded row."""
        with self._lock:
            self._rows[id(row)] = row
            self._flags[id(row)] = status

    def merge(self, row: Any, flag: int) -> int:
        """OR ``flag`` into the row's bitmask and return the new value."""
        key = id(row)
        with self._lock:
            merged = self._flags.get(key, 0) | flag
            self._flags[key] = merged
            self._rows.setdefault(key, row)
            return merged

    def merge_all(self, rows: Iterable[Any], flag: int) -> None:
        for row in rows:
            self.merge(row, flag)

    def get(self, row: Any) -> int | None:
        """Accumulated bitmask, or None if the row was never seeded."""
        return self._flags.get(id(row))

    def has_flag(self, row: Any, flag: int) -> bool:
        return (self._flags.get(id(row), 0) & flag) != 0

    def __contains__(self, row: Any) -> bool:
        return id(row) in self._flags

    def __len__(self) -> int:
        return len(self._flags)

    def __iter__(self) -> Iterator[tuple[Any, int]]:
        with self._lock:
            items = [(self._rows[key], flags) for key, flags in self._flags.items()]
        return iter(items)


class ErrorLedger:
    """Consecutive failure counts per row key and target.

    Entries are never cleared by the engine: a row that keeps failing against
    a target is skipped there until the ledger is reset (for example by a
    process restart).

    Example:
        >>> ledger = ErrorLedger(threshold=3)
        >>> for _ in range(4):
        ...     ledger.record_failure(key_hash=1234, target_index=1)
        >>> ledger.should_skip(1234, 1)
        True
        >>> ledger.should_skip(1234, 0)
        False
    """

    def __init__(self, threshold: int = DEFAULT_ERROR_THRESHOLD) -> None:
        if threshold < 0:
            raise ValueError("threshold must be non-negative")
        self._threshold = threshold
        self._counts: dict[tuple[int, int], int] = {}
        self._lock = threading.Lock()

    @property
    def threshold(self) -> int:
        return self._threshold

    def record_failure(self, key_hash: int, target_index: int) -> int:
        """Increment the failure count and return the new value."""
        key = (key_hash, target_index)
        with self._lock:
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
            return count

    def count(self, key_hash: int, target_index: int) -> int:
        return self._counts.get((key_hash, target_index), 0)

    def should_skip(self, key_hash: int, target_index: int) -> bool:
        """Whether the pair has failed more often than the threshold allows."""
        return self.count(key_hash, target_index) > self._threshold

    def reset(self) -> None:
        """Forget every recorded failure."""
        with self._lock:
            self._counts.clear()

    def __bool__(self) -> bool:
        return bool(self._counts)

    def __len__(self) -> int:
        return len(self._counts)

    def to_dict(self) -> dict[str, int]:
        """Snapshot of the ledger, keyed ``"<key_hash>:<target_index>"``."""
        with self._lock:
            return {f"{k}:{t}": count for (k, t), count in self._counts.items()}


_default_ledger = ErrorLedger()


def get_default_ledger() -> ErrorLedger:
    """Process-wide ledger shared by every cycle that doesn't bring its own."""
    return _default_ledger
