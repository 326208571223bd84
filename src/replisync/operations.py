"""One-off batched writes outside a replication cycle.

These helpers write rows to a single target immediately, with the same
statements and parameter ceiling the engine uses. Rows that do not fit one
statement are split into chunks, and all chunks run in one transaction.

Example:
    >>> target = SQLAlchemyTargetStore(create_engine("sqlite:///replica.db"))
    >>> schema = SQLAlchemySchemaResolver().resolve(Customer)
    >>> upsert(target, customers, schema)
    3
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from replisync.statements import (
    DEFAULT_MAX_PARAMETERS,
    BuiltStatement,
    StatementBuilder,
    StatementKind,
)

if TYPE_CHECKING:
    from replisync.schema import SchemaDescriptor
    from replisync.stores import TargetStore


def build_statements(
    kind: StatementKind,
    rows: Sequence[Any],
    builder: StatementBuilder,
) -> list[BuiltStatement]:
    """Build as few statements as the parameter ceiling allows."""
    if not rows:
        return []
    if builder.parameter_count(kind, len(rows)) <= builder.max_parameters:
        return [builder.build(kind, rows)]
    if kind is StatementKind.DELETE:
        size = max(1, builder.max_parameters // len(builder.schema.key_fields))
    else:
        size = builder.chunk_size()
    return [builder.build(kind, rows[i : i + size]) for i in range(0, len(rows), size)]


def execute(
    target: "TargetStore",
    kind: StatementKind,
    rows: Sequence[Any],
    schema: "SchemaDescriptor",
    *,
    max_parameters: int = DEFAULT_MAX_PARAMETERS,
) -> int:
    """Write ``rows`` to ``target`` and return the affected row count.

    Drivers that cannot report a count (-1) contribute nothing to the total.
    """
    builder = StatementBuilder(schema, target.dialect, max_parameters)
    statements = build_statements(kind, list(rows), builder)
    if not statements:
        return 0
    counts = target.execute(statements)
    return sum(count for count in counts if count is not None and count > 0)


def upsert(
    target: "TargetStore",
    rows: Sequence[Any],
    schema: "SchemaDescriptor",
    *,
    max_parameters: int = DEFAULT_MAX_PARAMETERS,
) -> int:
    """Insert missing rows and update existing ones."""
    return execute(target, StatementKind.UPSERT, rows, schema, max_parameters=max_parameters)


def delete(
    target: "TargetStore",
    rows: Sequence[Any],
    schema: "SchemaDescriptor",
    *,
    max_parameters: int = DEFAULT_MAX_PARAMETERS,
) -> int:
    """Delete rows matched by key."""
    return execute(target, StatementKind.DELETE, rows, schema, max_parameters=max_parameters)


def insert_if_absent(
    target: "TargetStore",
    rows: Sequence[Any],
    schema: "SchemaDescriptor",
    *,
    max_parameters: int = DEFAULT_MAX_PARAMETERS,
) -> int:
    """Insert rows whose key is not present yet; existing rows are untouched."""
    return execute(
        target, StatementKind.INSERT_IF_ABSENT, rows, schema, max_parameters=max_parameters
    )
