"""Counters collected during a replication cycle."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TargetMetrics:
    """Counters for one target.

    Attributes:
        rows_synced: Rows credited as applied.
        rows_failed: Rows that failed every attempt.
        rows_skipped: Rows skipped because of repeated failures.
        statements_executed: Statements that completed successfully.
        chunked_batches: Chunks executed after a parameter overflow.
        row_fallbacks: Single-row statements attempted.
        row_count_mismatches: Statements whose affected row count differed
            from the number of rows sent.
    """

    rows_synced: int = 0
    rows_failed: int = 0
    rows_skipped: int = 0
    statements_executed: int = 0
    chunked_batches: int = 0
    row_fallbacks: int = 0
    row_count_mismatches: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "rows_synced": self.rows_synced,
            "rows_failed": self.rows_failed,
            "rows_skipped": self.rows_skipped,
            "statements_executed": self.statements_executed,
            "chunked_batches": self.chunked_batches,
            "row_fallbacks": self.row_fallbacks,
            "row_count_mismatches": self.row_count_mismatches,
        }


@dataclass
class SyncMetrics:
    """Per-target counters for one cycle.

    Target tasks update their own entry only, but the lock keeps ``record``
    safe when callers share a target index.
    """

    targets: dict[int, TargetMetrics] = field(default_factory=dict)
    rows_loaded: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def target(self, index: int) -> TargetMetrics:
        with self._lock:
            return self.targets.setdefault(index, TargetMetrics())

    def record(self, index: int, **increments: int) -> None:
        """Add ``increments`` to the named counters of a target."""
        with self._lock:
            metrics = self.targets.setdefault(index, TargetMetrics())
            for name, amount in increments.items():
                setattr(metrics, name, getattr(metrics, name) + amount)

    @property
    def rows_synced(self) -> int:
        return sum(m.rows_synced for m in self.targets.values())

    @property
    def rows_failed(self) -> int:
        return sum(m.rows_failed for m in self.targets.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "rows_loaded": self.rows_loaded,
            "rows_synced": self.rows_synced,
            "rows_failed": self.rows_failed,
            "targets": {str(i): m.to_dict() for i, m in sorted(self.targets.items())},
        }
