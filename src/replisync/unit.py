"""Per-entity-type synchronization.

An ``EntitySyncUnit`` moves one entity type through three ordered phases per
cycle:

1. ``load``: read rows whose sync status is not complete and seed the
   success map from their on-disk status.
2. ``sync_to_target``: run once per target, concurrently across targets.
   Rows are written through a ladder of attempts:

   - one-shot: a single UPSERT plus a single DELETE in one transaction;
   - chunked: only after ``TooManyParametersError``, rows are split into
     chunks that fit the parameter ceiling;
   - per row: after any other failure, every row not yet credited for the
     target is written on its own, and terminal failures are recorded.

   Rows that failed more often than the error threshold against a target
   are skipped for that target.
3. ``persist_statuses``: copy the accumulated bitmasks into each row's
   sync-status attribute. The caller commits them to the source.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from replisync.exceptions import (
    InternalConsistencyError,
    LoadError,
    PersistError,
    RowSyncError,
    TooManyParametersError,
)
from replisync.ledger import ErrorLedger, SuccessMap, get_default_ledger
from replisync.logging_utils import LogSink, emit
from replisync.metrics import SyncMetrics
from replisync.statements import (
    DEFAULT_MAX_PARAMETERS,
    BuiltStatement,
    SqlDialect,
    StatementBuilder,
    StatementKind,
)

if TYPE_CHECKING:
    from replisync.schema import SchemaDescriptor
    from replisync.stores import SourceStore, TargetStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def _chunks(rows: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(rows), size):
        yield list(rows[start : start + size])


class EntitySyncUnit(Generic[T]):
    """Synchronizes rows of one entity type to every target.

    Args:
        entity_type: Mapped class whose rows are replicated.
        schema: Descriptor of the entity type.
        target_count: Number of targets in the cycle.
        ledger: Failure ledger. Defaults to the process-wide ledger.
        max_parameters: Parameter ceiling per statement.
        log: Optional sink receiving progress and warning messages.
        metrics: Optional counters shared with the cycle.
    """

    def __init__(
        self,
        entity_type: type[T],
        schema: "SchemaDescriptor",
        target_count: int,
        *,
        ledger: ErrorLedger | None = None,
        max_parameters: int = DEFAULT_MAX_PARAMETERS,
        log: LogSink | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        if target_count < 1:
            raise ValueError("target_count must be at least 1")
        self.entity_type = entity_type
        self.schema = schema
        self.target_count = target_count
        # all targets synced, i.e. 0b1111 for 4 targets
        self.complete_value = (1 << target_count) - 1
        self.log = log
        self.metrics = metrics if metrics is not None else SyncMetrics()
        self.rows: list[T] = []
        self.errors: list[Exception] = []

        self._ledger = ledger if ledger is not None else get_default_ledger()
        self._max_parameters = max_parameters
        self._success = SuccessMap()
        self._builders: dict[SqlDialect, StatementBuilder] = {}

    @property
    def name(self) -> str:
        return self.schema.entity_name

    @property
    def ledger(self) -> ErrorLedger:
        return self._ledger

    @property
    def success(self) -> SuccessMap:
        return self._success

    def builder_for(self, dialect: SqlDialect) -> StatementBuilder:
        builder = self._builders.get(dialect)
        if builder is None:
            builder = StatementBuilder(self.schema, dialect, self._max_parameters)
            self._builders[dialect] = builder
        return builder

    # -------------------------------------------------------------------------
    # Phase 1: load
    # -------------------------------------------------------------------------

    def load(self, source: "SourceStore") -> bool:
        """Load rows needing sync from the source.

        Returns:
            False if no row needs sync, True otherwise.

        Raises:
            LoadError: If the source query fails.
        """
        self.errors = []
        self._success = SuccessMap()
        try:
            rows = source.load(self.entity_type, self.schema.sync_field, self.complete_value)
        except Exception as e:
            self.rows = []
            raise LoadError(self.name, str(e)) from e

        self.rows = list(rows)
        if not self.rows:
            return False

        for row in self.rows:
            # bits of targets that no longer exist are dropped
            self._success.seed(row, self.schema.sync_status(row) & self.complete_value)
        self.metrics.rows_loaded += len(self.rows)
        self._emit(f"{len(self.rows)} {self.name} row{_plural(len(self.rows))} to sync.")
        return True

    # -------------------------------------------------------------------------
    # Phase 2: sync to one target
    # -------------------------------------------------------------------------

    async def sync_to_target(self, target: "TargetStore", target_index: int) -> None:
        """Apply pending rows to one target.

        Statement and row failures never propagate; they are collected in
        ``errors``.
        """
        if not self.rows:
            return
        success_flag = 1 << target_index

        items = [r for r in self.rows if not self._success.has_flag(r, success_flag)]
        items = self._drop_failing_rows(items, target, target_index)
        if not items:
            return

        count = len(items)
        self._emit(f"Syncing {count} {self.name} row{_plural(count)} to {target.name}")

        to_delete, to_upsert = self.partition(items)
        builder = self.builder_for(target.dialect)

        failed = False
        try:
            await self._apply(target, target_index, builder, to_upsert, to_delete)
        except TooManyParametersError:
            failed = not await self._apply_chunked(
                target, target_index, builder, to_upsert, to_delete
            )
        except Exception as e:
            # The transaction rolled back; fall back to one row at a time
            failed = True
            logger.warning(
                "Batch sync of %s to %s failed, retrying row by row: %s",
                self.name,
                target.name,
                e,
            )

        if failed:
            await self._apply_rows(target, target_index, builder, to_upsert, to_delete)

    def partition(self, rows: Sequence[T]) -> tuple[list[T], list[T]]:
        """Split rows into ``(to_delete, to_upsert)`` by the delete flag."""
        if self.schema.delete_field is None:
            return [], list(rows)
        to_delete: list[T] = []
        to_upsert: list[T] = []
        for row in rows:
            (to_delete if self.schema.is_deleted(row) else to_upsert).append(row)
        return to_delete, to_upsert

    def _drop_failing_rows(
        self, rows: list[T], target: "TargetStore", target_index: int
    ) -> list[T]:
        if len(self._ledger) == 0:
            return rows
        kept = [
            r
            for r in rows
            if not self._ledger.should_skip(self.schema.key_hash(r), target_index)
        ]
        removed = len(rows) - len(kept)
        if removed:
            self.metrics.record(target_index, rows_skipped=removed)
            self._emit(
                f"Skipping {removed} row{_plural(removed)} on target {target.name} "
                f"- too many errors",
                logging.WARNING,
            )
        return kept

    async def _apply(
        self,
        target: "TargetStore",
        target_index: int,
        builder: StatementBuilder,
        to_upsert: list[T],
        to_delete: list[T],
    ) -> None:
        """Write upserts and deletes in one transaction, then credit them."""
        statements: list[BuiltStatement] = []
        if to_upsert:
            statements.append(builder.upsert(to_upsert))
        if to_delete:
            statements.append(builder.delete(to_delete))
        if not statements:
            return

        counts = await self._execute(target, statements)
        self._check_counts(target, target_index, statements, counts)

        flag = 1 << target_index
        self._success.merge_all(to_upsert, flag)
        self._success.merge_all(to_delete, flag)
        self.metrics.record(
            target_index,
            rows_synced=len(to_upsert) + len(to_delete),
            statements_executed=len(statements),
        )

    async def _apply_chunked(
        self,
        target: "TargetStore",
        target_index: int,
        builder: StatementBuilder,
        to_upsert: list[T],
        to_delete: list[T],
    ) -> bool:
        """Write rows in parameter-sized chunks.

        Returns:
            True if every chunk succeeded.
        """
        size = builder.chunk_size()
        upsert_chunks = list(_chunks(to_upsert, size))
        delete_chunks = list(_chunks(to_delete, size))
        loop_count = max(len(upsert_chunks), len(delete_chunks))
        logger.debug(
            "Splitting %s sync to %s into %d chunk(s) of %d rows",
            self.name,
            target.name,
            loop_count,
            size,
        )

        ok = True
        for i in range(loop_count):
            batch_upserts = upsert_chunks[i] if i < len(upsert_chunks) else []
            batch_deletes = delete_chunks[i] if i < len(delete_chunks) else []
            try:
                await self._apply(target, target_index, builder, batch_upserts, batch_deletes)
                self.metrics.record(target_index, chunked_batches=1)
            except Exception as e:
                ok = False
                logger.warning(
                    "Chunk %d/%d of %s to %s failed: %s",
                    i + 1,
                    loop_count,
                    self.name,
                    target.name,
                    e,
                )
        return ok

    async def _apply_rows(
        self,
        target: "TargetStore",
        target_index: int,
        builder: StatementBuilder,
        to_upsert: list[T],
        to_delete: list[T],
    ) -> None:
        """Write every row not yet credited for the target on its own."""
        flag = 1 << target_index
        work = [(row, StatementKind.DELETE) for row in to_delete]
        work.extend((row, StatementKind.UPSERT) for row in to_upsert)

        for row, kind in work:
            # If the error came from a chunk, some rows may already be done
            if self._success.has_flag(row, flag):
                continue
            self.metrics.record(target_index, row_fallbacks=1)
            try:
                statement = builder.build(kind, [row])
                counts = await self._execute(target, [statement])
                self._check_counts(target, target_index, [statement], counts)
                self._success.merge(row, flag)
                self.metrics.record(target_index, rows_synced=1, statements_executed=1)
            except Exception as e:
                row_hash = self.schema.key_hash(row)
                failures = self._ledger.record_failure(row_hash, target_index)
                error = RowSyncError(target.name, target_index, row_hash, str(e))
                error.__cause__ = e
                self.errors.append(error)
                self.metrics.record(target_index, rows_failed=1)
                logger.debug(
                    "%s row %d failed on %s (%d failure%s)",
                    self.name,
                    row_hash,
                    target.name,
                    failures,
                    _plural(failures),
                )

    async def _execute(
        self, target: "TargetStore", statements: list[BuiltStatement]
    ) -> list[int]:
        # Stores may be synchronous
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, target.execute, statements)

    def _check_counts(
        self,
        target: "TargetStore",
        target_index: int,
        statements: Sequence[BuiltStatement],
        counts: Sequence[int],
    ) -> None:
        for statement, count in zip(statements, counts):
            # Drivers report -1 when the count is unknown
            if count is None or count < 0 or count == statement.row_count:
                continue
            self.metrics.record(target_index, row_count_mismatches=1)
            noun = "deleted" if statement.kind is StatementKind.DELETE else "returned"
            self._emit(
                f"Warning: {noun} row count {count} did not match expected rows "
                f"modified ({statement.row_count}) on {target.name}",
                logging.WARNING,
            )

    # -------------------------------------------------------------------------
    # Phase 3: persist
    # -------------------------------------------------------------------------

    def persist_statuses(self) -> None:
        """Copy accumulated success bitmasks into each row's sync status."""
        for row in self.rows:
            value = self._success.get(row)
            if value is None:
                self.errors.append(
                    InternalConsistencyError(
                        f"No stored success result for item with type {self.name}"
                    )
                )
                continue
            try:
                self.schema.set_sync_status(row, value)
            except Exception as e:
                error = PersistError(f"Could not update sync status of {self.name} row: {e}")
                error.__cause__ = e
                self.errors.append(error)

    def pending_targets(self, row: Any) -> list[int]:
        """Indexes of targets the row has not reached yet."""
        status = self._success.get(row)
        if status is None:
            status = self.schema.sync_status(row)
        return [i for i in range(self.target_count) if not status & (1 << i)]

    def clear(self) -> None:
        """Release the rows of the finished cycle."""
        self.rows = []
        self._success = SuccessMap()

    def _emit(self, message: str, level: int = logging.INFO) -> None:
        emit(logger, self.log, message, level)
