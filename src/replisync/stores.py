"""Source and target store executors.

The engine talks to databases through two narrow protocols:

- ``SourceStore``: loads rows needing sync and saves their updated statuses
  in one bulk save at the end of a cycle.
- ``TargetStore``: executes built statements, all statements of one call in
  a single transaction, and reports affected row counts.

The SQLAlchemy implementations are blocking; the engine calls them through
the event loop's default executor.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from replisync.config import EngineConfig
from replisync.statements import BuiltStatement, SqlDialect

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class SourceStore(Protocol):
    """Authoritative store rows are read from and statuses written back to."""

    @property
    def name(self) -> str: ...

    def load(self, entity_type: type, sync_field: str, complete_value: int) -> list[Any]: ...

    def save_all(self) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class TargetStore(Protocol):
    """Replica that receives built statements."""

    @property
    def name(self) -> str: ...

    @property
    def dialect(self) -> SqlDialect: ...

    def execute(self, statements: Sequence[BuiltStatement]) -> list[int]: ...


# =============================================================================
# SQLAlchemy Implementations
# =============================================================================


class SQLAlchemySourceStore:
    """Source store backed by a SQLAlchemy ORM session.

    Rows loaded during a cycle stay attached to one session, so assigning
    their sync-status attribute and calling ``save_all()`` writes every
    change back in one flush and commit.

    Example:
        >>> source = SQLAlchemySourceStore(create_engine("sqlite:///primary.db"))
        >>> rows = source.load(Customer, "sync_status", complete_value=3)
        >>> rows[0].sync_status = 3
        >>> source.save_all()
        >>> source.close()
    """

    def __init__(self, engine: "Engine", name: str | None = None) -> None:
        self._engine = engine
        self._name = name or _engine_name(engine)
        self._session: Session | None = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> "SQLAlchemySourceStore":
        return cls(config.create_engine(), name=config.display_name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def engine(self) -> "Engine":
        return self._engine

    @property
    def session(self) -> Session:
        """Session of the current cycle, opened on first use."""
        if self._session is None:
            self._session = Session(self._engine, expire_on_commit=False)
        return self._session

    def load(self, entity_type: type, sync_field: str, complete_value: int) -> list[Any]:
        """Load rows whose sync status is not ``complete_value``."""
        column = getattr(entity_type, sync_field)
        query = select(entity_type).where(or_(column != complete_value, column.is_(None)))
        return list(self.session.scalars(query).all())

    def save_all(self) -> None:
        """Flush and commit every pending change of the current cycle."""
        if self._session is None:
            return
        try:
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

    def close(self) -> None:
        """End the current cycle's session."""
        if self._session is not None:
            self._session.close()
            self._session = None

    def dispose(self) -> None:
        self.close()
        self._engine.dispose()


class SQLAlchemyTargetStore:
    """Target store executing raw statements on a SQLAlchemy engine."""

    def __init__(
        self,
        engine: "Engine",
        name: str | None = None,
        dialect: SqlDialect | None = None,
    ) -> None:
        self._engine = engine
        self._name = name or _engine_name(engine)
        self._dialect = dialect or SqlDialect.from_name(engine.dialect.name)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "SQLAlchemyTargetStore":
        return cls(config.create_engine(), name=config.display_name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def dialect(self) -> SqlDialect:
        return self._dialect

    @property
    def engine(self) -> "Engine":
        return self._engine

    def execute(self, statements: Sequence[BuiltStatement]) -> list[int]:
        """Execute statements in one transaction.

        Returns:
            Affected row count per statement.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If any statement fails. The
                transaction is rolled back and nothing is applied.
        """
        counts = []
        with self._engine.begin() as conn:
            for statement in statements:
                result = conn.execute(statement.to_clause())
                counts.append(result.rowcount)
        logger.debug("Executed %d statement(s) on %s", len(statements), self._name)
        return counts

    def dispose(self) -> None:
        self._engine.dispose()


def _engine_name(engine: "Engine") -> str:
    url = engine.url
    host = url.host or url.drivername
    return f"{host}/{url.database}" if url.database else host
