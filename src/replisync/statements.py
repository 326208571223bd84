"""Batched, idempotent write statements for replication targets.

The ``StatementBuilder`` turns a list of rows into one set-valued statement:

- UPSERT: insert missing rows, update every non-key column of existing ones.
- DELETE: remove rows matched by key.
- INSERT_IF_ABSENT: insert missing rows, leave existing ones untouched.

Each statement is a single atomic write (``MERGE`` on SQL Server,
``INSERT ... ON CONFLICT`` on PostgreSQL and SQLite), so a bad row fails the
whole batch instead of partially applying it. The retry ladder in
``replisync.unit`` depends on that.

The number of bound parameters is capped (2000 by default, safely under SQL
Server's 2100). The builder never splits rows itself; it raises
``TooManyParametersError`` and leaves chunking to the caller.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text
from sqlalchemy.dialects import mssql, postgresql, sqlite
from sqlalchemy.types import LargeBinary, NullType

from replisync.exceptions import TooManyParametersError

if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.sql.elements import TextClause
    from sqlalchemy.types import TypeEngine

    from replisync.schema import SchemaDescriptor


DEFAULT_MAX_PARAMETERS = 2000


class StatementKind(str, Enum):
    """Kinds of write statements."""

    UPSERT = "upsert"
    DELETE = "delete"
    INSERT_IF_ABSENT = "insert_if_absent"


class SqlDialect(str, Enum):
    """SQL dialects the builder can render."""

    MSSQL = "mssql"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"

    @classmethod
    def from_url(cls, url: str) -> "SqlDialect":
        """Detect dialect from a connection URL."""
        url_lower = str(url).lower()
        if url_lower.startswith(("mssql", "sqlserver")):
            return cls.MSSQL
        if url_lower.startswith(("postgresql", "postgres")):
            return cls.POSTGRESQL
        if url_lower.startswith("sqlite"):
            return cls.SQLITE
        raise ValueError(f"Unsupported dialect for URL: {url}")

    @classmethod
    def from_name(cls, name: str) -> "SqlDialect":
        """Map a SQLAlchemy dialect name (``engine.dialect.name``)."""
        return cls.from_url(name)

    @property
    def uses_merge(self) -> bool:
        return self is SqlDialect.MSSQL

    def sqlalchemy_dialect(self) -> "Dialect":
        if self is SqlDialect.MSSQL:
            return mssql.dialect()
        if self is SqlDialect.POSTGRESQL:
            return postgresql.dialect()
        return sqlite.dialect()


@dataclass(frozen=True)
class BoundParameter:
    """A positional parameter with the type it is bound as.

    Attributes:
        name: Placeholder name (``p0``, ``p1``...).
        value: Bound value, possibly None.
        type_: SQLAlchemy type used for binding, so NULLs stay typed.
    """

    name: str
    value: Any
    type_: "TypeEngine | None" = None


@dataclass
class BuiltStatement:
    """A rendered statement and its parameters.

    Parameters are in row-major, then property-major order, matching the
    placeholders in ``sql``.
    """

    kind: StatementKind
    sql: str
    parameters: list[BoundParameter] = field(default_factory=list)
    row_count: int = 0

    @property
    def values(self) -> list[Any]:
        """Positional parameter values."""
        return [p.value for p in self.parameters]

    def to_clause(self) -> "TextClause":
        """Return an executable SQLAlchemy clause with typed binds."""
        clause = text(self.sql)
        if not self.parameters:
            return clause
        return clause.bindparams(
            *(bindparam(p.name, p.value, type_=p.type_) for p in self.parameters)
        )

    def __str__(self) -> str:
        return self.sql


class StatementBuilder:
    """Builds batched write statements for one entity type.

    Example:
        >>> builder = StatementBuilder(schema, SqlDialect.SQLITE)
        >>> statement = builder.upsert(rows)
        >>> with engine.begin() as conn:
        ...     conn.execute(statement.to_clause())
    """

    def __init__(
        self,
        schema: "SchemaDescriptor",
        dialect: SqlDialect = SqlDialect.MSSQL,
        max_parameters: int = DEFAULT_MAX_PARAMETERS,
    ) -> None:
        if max_parameters < 1:
            raise ValueError("max_parameters must be positive")
        self._schema = schema
        self._dialect = dialect
        self._max_parameters = max_parameters
        self._preparer = dialect.sqlalchemy_dialect().identifier_preparer

    @property
    def schema(self) -> "SchemaDescriptor":
        return self._schema

    @property
    def dialect(self) -> SqlDialect:
        return self._dialect

    @property
    def max_parameters(self) -> int:
        return self._max_parameters

    # -------------------------------------------------------------------------
    # Sizing
    # -------------------------------------------------------------------------

    def parameter_count(self, kind: StatementKind, row_count: int) -> int:
        """Number of parameters a statement of ``row_count`` rows binds."""
        if kind is StatementKind.DELETE:
            return len(self._schema.key_fields) * row_count
        return self._schema.property_count * row_count

    def chunk_size(self) -> int:
        """Rows per statement that always fit the parameter ceiling."""
        return max(1, self._max_parameters // self._schema.property_count)

    def check_size(self, kind: StatementKind, row_count: int) -> None:
        """Raise ``TooManyParametersError`` if the statement would be too big."""
        count = self.parameter_count(kind, row_count)
        if count > self._max_parameters:
            raise TooManyParametersError(count, self._max_parameters)

    # -------------------------------------------------------------------------
    # Public builders
    # -------------------------------------------------------------------------

    def build(self, kind: StatementKind, rows: Sequence[Any]) -> BuiltStatement:
        """Build a statement of the given kind.

        Raises:
            ValueError: If ``rows`` is empty.
            TooManyParametersError: If the parameter ceiling is exceeded.
        """
        if not rows:
            raise ValueError(f"Cannot build {kind.value} statement without rows")
        self.check_size(kind, len(rows))
        if kind is StatementKind.DELETE:
            return self._build_delete(rows)
        return self._build_write(kind, rows)

    def upsert(self, rows: Sequence[Any]) -> BuiltStatement:
        return self.build(StatementKind.UPSERT, rows)

    def delete(self, rows: Sequence[Any]) -> BuiltStatement:
        return self.build(StatementKind.DELETE, rows)

    def insert_if_absent(self, rows: Sequence[Any]) -> BuiltStatement:
        return self.build(StatementKind.INSERT_IF_ABSENT, rows)

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _quote(self, name: str) -> str:
        return self._preparer.quote_identifier(name)

    def _table(self) -> str:
        table = self._schema.table
        if table.schema:
            return f"{self._quote(table.schema)}.{self._quote(table.name)}"
        return self._quote(table.name)

    def _bind(self, prop: str, value: Any, index: int) -> BoundParameter:
        declared = self._schema.column_types.get(prop)
        if value is None and declared is None:
            # Binary columns need their own NULL flavour on some drivers
            declared = LargeBinary() if self._schema.is_binary(prop) else NullType()
        return BoundParameter(name=f"p{index}", value=value, type_=declared)

    def _values_block(
        self, rows: Sequence[Any], props: list[str]
    ) -> tuple[str, list[BoundParameter]]:
        parameters: list[BoundParameter] = []
        tuples = []
        for row in rows:
            placeholders = []
            for prop in props:
                param = self._bind(prop, self._schema.get(row, prop), len(parameters))
                parameters.append(param)
                placeholders.append(f":{param.name}")
            tuples.append("(" + ", ".join(placeholders) + ")")
        return ", ".join(tuples), parameters

    def _insert_properties(self) -> list[str]:
        schema = self._schema
        if self._dialect.uses_merge:
            return schema.insertable_properties
        # ON CONFLICT needs the match key among the inserted columns
        keys = set(schema.key_fields)
        return [
            p
            for p in schema.property_names
            if p not in schema.auto_generated_key_fields or p in keys
        ]

    def _build_write(self, kind: StatementKind, rows: Sequence[Any]) -> BuiltStatement:
        schema = self._schema
        if self._dialect.uses_merge:
            props = schema.property_names
        else:
            props = self._insert_properties()
        values_sql, parameters = self._values_block(rows, props)

        if self._dialect.uses_merge:
            sql = self._render_merge(kind, values_sql, props)
        else:
            sql = self._render_on_conflict(kind, values_sql, props)

        return BuiltStatement(kind=kind, sql=sql, parameters=parameters, row_count=len(rows))

    def _render_merge(self, kind: StatementKind, values_sql: str, props: list[str]) -> str:
        schema = self._schema
        columns = [self._quote(schema.column(p)) for p in props]
        match = " AND ".join(
            f"T.{self._quote(schema.column(k))} = S.{self._quote(schema.column(k))}"
            for k in schema.key_fields
        )
        insertables = [self._quote(schema.column(p)) for p in schema.insertable_properties]

        parts = [
            f"MERGE INTO {self._table()} AS T",
            f"USING (VALUES {values_sql}) AS S ({', '.join(columns)})",
            f"ON ({match})",
        ]
        if kind is StatementKind.UPSERT:
            updates = ", ".join(
                f"T.{self._quote(schema.column(p))} = S.{self._quote(schema.column(p))}"
                for p in schema.non_key_properties
            )
            parts.append(f"WHEN MATCHED THEN UPDATE SET {updates}")
        parts.append(
            f"WHEN NOT MATCHED THEN INSERT ({', '.join(insertables)}) "
            f"VALUES ({', '.join('S.' + c for c in insertables)});"
        )
        return " ".join(parts)

    def _render_on_conflict(
        self, kind: StatementKind, values_sql: str, props: list[str]
    ) -> str:
        schema = self._schema
        columns = ", ".join(self._quote(schema.column(p)) for p in props)
        conflict = ", ".join(self._quote(schema.column(k)) for k in schema.key_fields)
        sql = f"INSERT INTO {self._table()} ({columns}) VALUES {values_sql} ON CONFLICT ({conflict})"
        if kind is StatementKind.INSERT_IF_ABSENT:
            return f"{sql} DO NOTHING"
        updates = ", ".join(
            f"{self._quote(schema.column(p))} = excluded.{self._quote(schema.column(p))}"
            for p in schema.non_key_properties
        )
        return f"{sql} DO UPDATE SET {updates}"

    def _build_delete(self, rows: Sequence[Any]) -> BuiltStatement:
        schema = self._schema
        keys = list(schema.key_fields)
        parameters: list[BoundParameter] = []

        if len(keys) == 1:
            key = keys[0]
            placeholders = []
            for row in rows:
                param = self._bind(key, schema.get(row, key), len(parameters))
                parameters.append(param)
                placeholders.append(f":{param.name}")
            where = f"{self._quote(schema.column(key))} IN ({', '.join(placeholders)})"
        else:
            clauses = []
            for row in rows:
                terms = []
                for key in keys:
                    param = self._bind(key, schema.get(row, key), len(parameters))
                    parameters.append(param)
                    terms.append(f"{self._quote(schema.column(key))} = :{param.name}")
                clauses.append("(" + " AND ".join(terms) + ")")
            where = " OR ".join(clauses)

        sql = f"DELETE FROM {self._table()} WHERE {where}"
        return BuiltStatement(
            kind=StatementKind.DELETE, sql=sql, parameters=parameters, row_count=len(rows)
        )
