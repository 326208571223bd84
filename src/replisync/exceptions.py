"""Exception hierarchy for replisync.

All errors raised or collected by the replication engine derive from
``ReplisyncError``. Driver errors are never surfaced bare: they are wrapped in
one of the classes below and chained through ``__cause__`` so callers can
inspect the original failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from replisync.cycle import CycleResult


class ReplisyncError(Exception):
    """Base exception for all replisync errors."""

    pass


class ConfigurationError(ReplisyncError):
    """Raised when an entity type or the engine is misconfigured.

    Configuration errors are fatal at registration time: a cycle never starts
    for an entity type that failed to register.
    """

    pass


class TooManyParametersError(ReplisyncError):
    """Raised when a statement would bind more parameters than allowed.

    This is a control-flow signal, not a failure: the sync unit reacts by
    splitting the rows into chunks.
    """

    def __init__(self, parameter_count: int, max_parameters: int) -> None:
        self.parameter_count = parameter_count
        self.max_parameters = max_parameters
        super().__init__(
            f"Statement needs {parameter_count} parameters, "
            f"maximum is {max_parameters}"
        )


class LoadError(ReplisyncError):
    """Raised when rows needing sync cannot be loaded from the source."""

    def __init__(self, entity_name: str, message: str) -> None:
        self.entity_name = entity_name
        super().__init__(f"Error during item load for {entity_name}: {message}")


class StatementError(ReplisyncError):
    """Raised when executing a statement against a target fails."""

    def __init__(self, target_name: str, message: str) -> None:
        self.target_name = target_name
        super().__init__(f"Statement failed on {target_name}: {message}")


class RowSyncError(StatementError):
    """Terminal failure of a single row against one target."""

    def __init__(
        self,
        target_name: str,
        target_index: int,
        key_hash: int,
        message: str,
    ) -> None:
        self.target_index = target_index
        self.key_hash = key_hash
        super().__init__(target_name, f"row {key_hash}: {message}")


class TargetSyncError(ReplisyncError):
    """Raised when a whole target task fails (e.g. the target is unreachable)."""

    def __init__(self, target_name: str, target_index: int, message: str) -> None:
        self.target_name = target_name
        self.target_index = target_index
        super().__init__(f"Sync to target {target_index} ({target_name}) failed: {message}")


class PersistError(ReplisyncError):
    """Raised when updated sync statuses cannot be written back to the source."""

    pass


class InternalConsistencyError(ReplisyncError):
    """Raised when the engine's own bookkeeping is inconsistent."""

    pass


class CycleError(ReplisyncError):
    """Aggregate error raised when a replication cycle recorded any failure.

    Attributes:
        errors: Every underlying error, in the order it was recorded.
        result: The full cycle result, including per-entity error lists.
    """

    def __init__(self, result: "CycleResult") -> None:
        self.result = result
        self.errors: list[Exception] = result.all_errors()
        super().__init__(f"Errors occurred: {len(self.errors)} error(s) during replication cycle")

    def __str__(self) -> str:
        lines = [super().__str__()]
        lines.extend(f"  - {error}" for error in self.errors)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error_count": len(self.errors),
            "errors": [
                {"type": type(e).__name__, "message": str(e)} for e in self.errors
            ],
        }
