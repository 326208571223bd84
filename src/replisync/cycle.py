"""Replication cycle orchestration.

A ``ReplicationCycle`` owns the source store, the ordered list of target
stores and the registered entity types. ``run()`` performs one full pass:

- Phase A: load every registered entity type from the source, in order.
- Phase B: one task per target, all running concurrently; each task syncs
  every loaded entity type to its target in order.
- Phase C: write the accumulated statuses back into the rows and commit the
  source in one bulk save.
- Phase D: release the cycle lock and raise ``CycleError`` if anything went
  wrong anywhere.

Only one cycle runs at a time. A call made while another cycle holds the lock
returns a skipped result immediately instead of queueing.

Example:
    >>> cycle = ReplicationCycle.from_config(ReplicationConfig.from_file("sync.yaml"))
    >>> cycle.register(Customer)
    >>> cycle.register(Order, delete_field="is_deleted")
    >>> result = await cycle.run()
    >>> result.metrics.to_dict()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from replisync.exceptions import (
    ConfigurationError,
    CycleError,
    LoadError,
    PersistError,
    TargetSyncError,
)
from replisync.ledger import DEFAULT_ERROR_THRESHOLD, ErrorLedger, get_default_ledger
from replisync.logging_utils import LogSink, emit
from replisync.metrics import SyncMetrics
from replisync.schema import SchemaDescriptor, SchemaResolver, SQLAlchemySchemaResolver
from replisync.statements import DEFAULT_MAX_PARAMETERS
from replisync.stores import SQLAlchemySourceStore, SQLAlchemyTargetStore
from replisync.unit import EntitySyncUnit

if TYPE_CHECKING:
    from replisync.config import ReplicationConfig
    from replisync.stores import SourceStore, TargetStore

logger = logging.getLogger(__name__)

# Errors not tied to a single entity type are filed under this key
CYCLE_ERRORS_KEY = "<cycle>"

_process_cycle_lock = threading.Lock()


@dataclass
class CycleResult:
    """Outcome of one replication cycle.

    Attributes:
        skipped: True if another cycle was already running.
        loaded: Rows loaded per entity type.
        errors: Errors per entity type, plus cycle-level errors under
            ``CYCLE_ERRORS_KEY``.
        metrics: Per-target counters.
        started_at: When the cycle started.
        completed_at: When the cycle finished.
    """

    skipped: bool = False
    loaded: dict[str, int] = field(default_factory=dict)
    errors: dict[str, list[Exception]] = field(default_factory=dict)
    metrics: SyncMetrics = field(default_factory=SyncMetrics)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None

    def record(self, entity_name: str, error: Exception) -> None:
        self.errors.setdefault(entity_name, []).append(error)

    def all_errors(self) -> list[Exception]:
        return [error for errors in self.errors.values() for error in errors]

    @property
    def error_count(self) -> int:
        return sum(len(errors) for errors in self.errors.values())

    @property
    def succeeded(self) -> bool:
        return self.error_count == 0

    @property
    def duration_ms(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def complete(self) -> None:
        self.completed_at = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "skipped": self.skipped,
            "succeeded": self.succeeded,
            "loaded": dict(self.loaded),
            "errors": {
                name: [f"{type(e).__name__}: {e}" for e in errors]
                for name, errors in self.errors.items()
            },
            "metrics": self.metrics.to_dict(),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


class ReplicationCycle:
    """Replicates registered entity types from one source to many targets.

    Args:
        source: Authoritative store.
        targets: Target stores. A target's position is its bit in the sync
            status, so the order must stay stable between runs.
        resolver: Schema resolver used by ``register``.
        ledger: Failure ledger. Defaults to the process-wide ledger.
        max_parameters: Parameter ceiling per statement.
        log: Optional sink receiving progress messages.
        on_finished: Called after statuses are updated, before the source
            is saved.
        lock: Cycle lock. Defaults to a lock shared by the whole process.
    """

    def __init__(
        self,
        source: "SourceStore",
        targets: Sequence["TargetStore"],
        *,
        resolver: SchemaResolver | None = None,
        ledger: ErrorLedger | None = None,
        max_parameters: int = DEFAULT_MAX_PARAMETERS,
        log: LogSink | None = None,
        on_finished: Callable[[], None] | None = None,
        lock: threading.Lock | None = None,
    ) -> None:
        if not targets:
            raise ConfigurationError("At least one target is required")
        self._source = source
        self._targets = list(targets)
        self._resolver = resolver if resolver is not None else SQLAlchemySchemaResolver()
        self._ledger = ledger if ledger is not None else get_default_ledger()
        self._max_parameters = max_parameters
        self._units: list[EntitySyncUnit[Any]] = []
        self._lock = lock if lock is not None else _process_cycle_lock
        self.log = log
        self.on_finished = on_finished

    @classmethod
    def from_config(cls, config: "ReplicationConfig", **kwargs: Any) -> "ReplicationCycle":
        """Create a cycle with SQLAlchemy stores built from configuration."""
        config.validate()
        if "ledger" not in kwargs and config.error_threshold != DEFAULT_ERROR_THRESHOLD:
            kwargs["ledger"] = ErrorLedger(threshold=config.error_threshold)
        source = SQLAlchemySourceStore.from_config(config.source)
        targets: list[SQLAlchemyTargetStore] = []
        try:
            for target_config in config.targets:
                targets.append(SQLAlchemyTargetStore.from_config(target_config))
        except ConfigurationError:
            for store in [source, *targets]:
                store.dispose()
            raise
        return cls(source, targets, max_parameters=config.max_parameters, **kwargs)

    @property
    def source(self) -> "SourceStore":
        return self._source

    @property
    def targets(self) -> list["TargetStore"]:
        return list(self._targets)

    @property
    def target_count(self) -> int:
        return len(self._targets)

    @property
    def complete_value(self) -> int:
        """Sync status of a row present on every target."""
        return (1 << len(self._targets)) - 1

    @property
    def ledger(self) -> ErrorLedger:
        return self._ledger

    @property
    def units(self) -> list[EntitySyncUnit[Any]]:
        return list(self._units)

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        entity_type: type,
        *,
        sync_field: str | None = None,
        delete_field: str | None = None,
        match_key: Iterable[str] | None = None,
        exclude_fields: Iterable[str] = (),
        schema: SchemaDescriptor | None = None,
    ) -> EntitySyncUnit[Any]:
        """Add an entity type to every future cycle.

        Args:
            entity_type: Mapped class to replicate.
            sync_field: Sync-status property; found by marker if omitted.
            delete_field: Property flagging rows to delete on targets.
            match_key: Properties to match target rows on instead of the
                primary key.
            exclude_fields: Properties never written to targets.
            schema: Prebuilt descriptor, bypassing the resolver.

        Raises:
            ConfigurationError: If the entity type is already registered or
                its schema cannot be resolved.
        """
        if any(unit.entity_type is entity_type for unit in self._units):
            raise ConfigurationError(f"Type {entity_type.__name__} is already registered")

        if schema is None:
            try:
                schema = self._resolver.resolve(
                    entity_type,
                    sync_field=sync_field,
                    delete_field=delete_field,
                    match_key=match_key,
                    exclude_fields=exclude_fields,
                )
            except ConfigurationError:
                raise
            except Exception as e:
                raise ConfigurationError(
                    f"Could not resolve schema of {entity_type.__name__}: {e}"
                ) from e

        unit: EntitySyncUnit[Any] = EntitySyncUnit(
            entity_type,
            schema,
            self.target_count,
            ledger=self._ledger,
            max_parameters=self._max_parameters,
            log=self.log,
        )
        self._units.append(unit)
        logger.debug("Registered %s for replication to %d target(s)", schema.entity_name, self.target_count)
        return unit

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def run(self) -> CycleResult:
        """Run one replication cycle.

        Returns:
            The cycle result. ``skipped`` is set if another cycle was running.

        Raises:
            CycleError: If any load, sync or persist error was recorded.
        """
        if not self._lock.acquire(blocking=False):
            logger.debug("Replication cycle already in progress, skipping")
            return CycleResult(skipped=True)

        result = CycleResult()
        try:
            await self._run(result)
        except Exception as e:
            result.record(CYCLE_ERRORS_KEY, e)
        finally:
            self._finish()
            self._lock.release()

        result.complete()
        if not result.succeeded:
            raise CycleError(result)
        return result

    def run_sync(self) -> CycleResult:
        """Blocking wrapper around ``run()``."""
        return asyncio.run(self.run())

    async def _run(self, result: CycleResult) -> None:
        loop = asyncio.get_running_loop()

        # Phase A: load
        active: list[EntitySyncUnit[Any]] = []
        for unit in self._units:
            unit.metrics = result.metrics
            unit.log = self.log
            try:
                has_rows = await loop.run_in_executor(None, unit.load, self._source)
            except LoadError as e:
                result.record(unit.name, e)
                continue
            if has_rows:
                active.append(unit)
                result.loaded[unit.name] = len(unit.rows)

        if not active:
            self._emit("Nothing to sync")
            return

        # Phase B: all targets concurrently
        outcomes = await asyncio.gather(
            *(
                self._sync_target(active, target, index)
                for index, target in enumerate(self._targets)
            ),
            return_exceptions=True,
        )
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                target = self._targets[index]
                error = TargetSyncError(target.name, index, str(outcome))
                error.__cause__ = outcome
                result.record(CYCLE_ERRORS_KEY, error)

        # Phase C: statuses back to the source
        for unit in active:
            try:
                unit.persist_statuses()
            except Exception as e:
                error = PersistError("Error occurred during status update")
                error.__cause__ = e
                result.record(unit.name, error)
            for unit_error in unit.errors:
                result.record(unit.name, unit_error)

        if self.on_finished is not None:
            self.on_finished()

        try:
            await loop.run_in_executor(None, self._source.save_all)
        except Exception as e:
            error = PersistError(f"Could not save sync statuses to {self._source.name}: {e}")
            error.__cause__ = e
            result.record(CYCLE_ERRORS_KEY, error)

        synced = result.metrics.rows_synced
        self._emit(
            f"Replication cycle finished: {synced} row update(s) applied, "
            f"{result.error_count} error(s)"
        )

    async def _sync_target(
        self,
        units: list[EntitySyncUnit[Any]],
        target: "TargetStore",
        index: int,
    ) -> None:
        for unit in units:
            await unit.sync_to_target(target, index)

    def _finish(self) -> None:
        for unit in self._units:
            unit.clear()
        try:
            self._source.close()
        except Exception:
            logger.warning("Could not close source %s", self._source.name, exc_info=True)

    def close(self) -> None:
        """Dispose of store engines that support it."""
        for store in [self._source, *self._targets]:
            dispose = getattr(store, "dispose", None)
            if dispose is not None:
                dispose()

    def _emit(self, message: str, level: int = logging.INFO) -> None:
        emit(logger, self.log, message, level)
