"""Schema descriptors for replicated entity types.

A ``SchemaDescriptor`` captures everything the engine needs to know about one
entity type: the target table, the ordered property-to-column mapping, the
match key, the store-generated keys and the designated sync-status column.
Descriptors are built once at registration and treated as immutable
configuration afterwards.

Field access goes through an explicit accessor table built at construction
time, so the hot paths never look attributes up by reflection.

Example:
    >>> resolver = SQLAlchemySchemaResolver()
    >>> schema = resolver.resolve(Customer, sync_field="sync_status")
    >>> schema.table.qualified_name
    'dbo.customers'
    >>> schema.key_values(customer)
    (42,)
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from sqlalchemy import inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.types import BINARY, VARBINARY, LargeBinary, TypeEngine

from replisync.exceptions import ConfigurationError
from replisync.hashing import MAX_HASHES, key_hash

SYNC_COLUMN_INFO_KEY = "sync_column"
DELETE_COLUMN_INFO_KEY = "delete_column"

_BINARY_TYPES = (LargeBinary, BINARY, VARBINARY)


# =============================================================================
# Field Access
# =============================================================================


@dataclass(frozen=True)
class FieldAccessor:
    """Typed get/set pair for one property of an entity type.

    Attributes:
        name: Property name on the entity.
        getter: Returns the property value of a row.
        setter: Assigns the property value of a row.
    """

    name: str
    getter: Callable[[Any], Any]
    setter: Callable[[Any, Any], None]

    @classmethod
    def for_attribute(cls, name: str) -> "FieldAccessor":
        """Build an accessor that reads and writes a plain attribute."""

        def getter(row: Any) -> Any:
            return getattr(row, name)

        def setter(row: Any, value: Any) -> None:
            setattr(row, name, value)

        return cls(name=name, getter=getter, setter=setter)


@dataclass(frozen=True)
class TableName:
    """Schema-qualified table name."""

    name: str
    schema: str | None = None

    @property
    def qualified_name(self) -> str:
        """Unquoted ``schema.name`` form, for logs."""
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def __str__(self) -> str:
        return self.qualified_name


# =============================================================================
# Schema Descriptor
# =============================================================================


@dataclass(frozen=True)
class SchemaDescriptor:
    """Immutable description of a replicated entity type.

    Attributes:
        entity_name: Display name of the entity type.
        table: Target table.
        columns_by_property: Ordered property name to column name mapping.
            Never contains the sync-status property.
        key_fields: Properties forming the match key.
        sync_field: Property holding the sync-status bitmask.
        primary_key_fields: Primary key properties. Defaults to the match
            key; differs from it when the match key is overridden.
        auto_generated_key_fields: Primary key properties assigned by the
            store.
        delete_field: Optional property flagging soft-deleted rows.
        binary_fields: Properties mapped to binary columns.
        column_types: Declared SQLAlchemy type per property, when known.
        accessors: Get/set table covering every mapped property plus the
            sync-status and delete-flag properties.
    """

    entity_name: str
    table: TableName
    columns_by_property: Mapping[str, str]
    key_fields: tuple[str, ...]
    sync_field: str
    primary_key_fields: tuple[str, ...] = ()
    auto_generated_key_fields: frozenset[str] = frozenset()
    delete_field: str | None = None
    binary_fields: frozenset[str] = frozenset()
    column_types: Mapping[str, TypeEngine] = field(default_factory=dict)
    accessors: Mapping[str, FieldAccessor] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.primary_key_fields:
            object.__setattr__(self, "primary_key_fields", tuple(self.key_fields))
        self._validate()
        # Fill in attribute accessors for anything the caller did not provide
        accessors = dict(self.accessors)
        for name in [*self.columns_by_property, self.sync_field, self.delete_field]:
            if name is not None and name not in accessors:
                accessors[name] = FieldAccessor.for_attribute(name)
        object.__setattr__(self, "accessors", accessors)
        object.__setattr__(self, "columns_by_property", dict(self.columns_by_property))

    def _validate(self) -> None:
        name = self.entity_name
        if not self.columns_by_property:
            raise ConfigurationError(f"Type {name} has no replicated columns")
        if not self.key_fields:
            raise ConfigurationError(f"Type {name} has no key fields")
        if len(self.key_fields) > MAX_HASHES:
            raise ConfigurationError(
                f"Type {name} has more than {MAX_HASHES} key fields to combine hashes"
            )
        missing = [k for k in self.key_fields if k not in self.columns_by_property]
        if missing:
            raise ConfigurationError(
                f"Key fields {missing} of type {name} are not mapped properties"
            )
        if self.sync_field in self.columns_by_property:
            raise ConfigurationError(
                f"Sync column {self.sync_field} of type {name} must not be replicated"
            )
        unmapped = [k for k in self.primary_key_fields if k not in self.columns_by_property]
        if unmapped:
            raise ConfigurationError(
                f"Primary key fields {unmapped} of type {name} are not mapped properties"
            )
        if not self.auto_generated_key_fields <= set(self.columns_by_property):
            raise ConfigurationError(
                f"Store-generated keys of type {name} must be mapped properties"
            )
        if not self.auto_generated_key_fields <= set(self.primary_key_fields):
            raise ConfigurationError(
                f"Store-generated keys of type {name} must be part of its primary key"
            )
        if not self.non_key_properties:
            raise ConfigurationError(f"Can't upsert type {name} that has only primary keys")

    # -------------------------------------------------------------------------
    # Layout
    # -------------------------------------------------------------------------

    @property
    def property_names(self) -> list[str]:
        """Replicated properties, in column order."""
        return list(self.columns_by_property)

    @property
    def property_count(self) -> int:
        return len(self.columns_by_property)

    @property
    def non_key_properties(self) -> list[str]:
        """Properties updated when a row already exists in the target.

        Match key, primary key and store-generated properties are never
        rewritten on a matched row.
        """
        keys = {*self.key_fields, *self.primary_key_fields, *self.auto_generated_key_fields}
        return [p for p in self.columns_by_property if p not in keys]

    @property
    def insertable_properties(self) -> list[str]:
        """Properties written when a row is inserted."""
        return [
            p for p in self.columns_by_property if p not in self.auto_generated_key_fields
        ]

    def column(self, prop: str) -> str:
        return self.columns_by_property[prop]

    def is_binary(self, prop: str) -> bool:
        return prop in self.binary_fields

    # -------------------------------------------------------------------------
    # Row access
    # -------------------------------------------------------------------------

    def get(self, row: Any, prop: str) -> Any:
        return self.accessors[prop].getter(row)

    def set(self, row: Any, prop: str, value: Any) -> None:
        self.accessors[prop].setter(row, value)

    def values(self, row: Any) -> list[Any]:
        """Replicated property values of a row, in column order."""
        return [self.accessors[p].getter(row) for p in self.columns_by_property]

    def key_values(self, row: Any) -> tuple[Any, ...]:
        return tuple(self.accessors[k].getter(row) for k in self.key_fields)

    def key_hash(self, row: Any) -> int:
        """Stable fingerprint of the row's match key."""
        return key_hash(self.key_values(row))

    def sync_status(self, row: Any) -> int:
        return int(self.accessors[self.sync_field].getter(row) or 0)

    def set_sync_status(self, row: Any, value: int) -> None:
        self.accessors[self.sync_field].setter(row, value)

    def is_deleted(self, row: Any) -> bool:
        """Whether the row should be propagated as a delete."""
        if self.delete_field is None:
            return False
        return bool(self.accessors[self.delete_field].getter(row))


# =============================================================================
# Resolvers
# =============================================================================


@runtime_checkable
class SchemaResolver(Protocol):
    """Resolves an entity type into a schema descriptor.

    Implementations must be deterministic and should cache their results.
    """

    def resolve(
        self,
        entity_type: type,
        *,
        sync_field: str | None = None,
        delete_field: str | None = None,
        match_key: Iterable[str] | None = None,
        exclude_fields: Iterable[str] = (),
    ) -> SchemaDescriptor: ...


class SQLAlchemySchemaResolver:
    """Builds descriptors from SQLAlchemy declarative mappings.

    The sync-status column is either named explicitly or found by its
    ``info={"sync_column": True}`` marker; exactly one column may carry the
    marker. The delete-flag column may likewise be marked with
    ``info={"delete_column": True}``.

    Store-generated keys are the primary key columns SQLAlchemy treats as
    autoincrement or that declare an ``Identity``.
    """

    def __init__(self) -> None:
        self._cache: dict[tuple[Any, ...], SchemaDescriptor] = {}
        self._lock = threading.Lock()

    def resolve(
        self,
        entity_type: type,
        *,
        sync_field: str | None = None,
        delete_field: str | None = None,
        match_key: Iterable[str] | None = None,
        exclude_fields: Iterable[str] = (),
    ) -> SchemaDescriptor:
        """Resolve (and cache) the descriptor of a mapped class.

        Args:
            entity_type: SQLAlchemy mapped class.
            sync_field: Sync-status property. Located by marker if omitted.
            delete_field: Optional delete-flag property.
            match_key: Explicit match key overriding the primary key.
            exclude_fields: Properties never written to targets.

        Raises:
            ConfigurationError: If the type is not mapped or the mapping is
                unusable for replication.
        """
        match_key = tuple(match_key) if match_key is not None else None
        exclude_fields = tuple(exclude_fields)
        cache_key = (entity_type, sync_field, delete_field, match_key, exclude_fields)

        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached
            descriptor = self._build(
                entity_type, sync_field, delete_field, match_key, exclude_fields
            )
            self._cache[cache_key] = descriptor
            return descriptor

    def _build(
        self,
        entity_type: type,
        sync_field: str | None,
        delete_field: str | None,
        match_key: tuple[str, ...] | None,
        exclude_fields: tuple[str, ...],
    ) -> SchemaDescriptor:
        type_name = getattr(entity_type, "__name__", repr(entity_type))
        try:
            mapper = inspect(entity_type)
        except NoInspectionAvailable as e:
            raise ConfigurationError(f"Type {type_name} is not a mapped class") from e

        table = mapper.local_table
        columns = {}
        for prop in mapper.column_attrs:
            columns[prop.key] = prop.columns[0]

        sync_field = sync_field or self._find_marked(
            type_name, columns, SYNC_COLUMN_INFO_KEY, required=True
        )
        if sync_field not in columns:
            raise ConfigurationError(f"Type {type_name} has no property {sync_field}")
        if delete_field is None:
            delete_field = self._find_marked(
                type_name, columns, DELETE_COLUMN_INFO_KEY, required=False
            )
        elif delete_field not in columns:
            raise ConfigurationError(f"Type {type_name} has no property {delete_field}")

        unknown = [f for f in exclude_fields if f not in columns]
        if unknown:
            raise ConfigurationError(f"Cannot exclude unknown properties {unknown} of {type_name}")

        primary_keys = [key for key, col in columns.items() if col.primary_key]
        autoincrement_column = getattr(table, "autoincrement_column", None)
        auto_keys = frozenset(
            key
            for key in primary_keys
            if columns[key] is autoincrement_column
            or getattr(columns[key], "identity", None) is not None
        )

        replicated = {
            key: col
            for key, col in columns.items()
            if key != sync_field and key not in exclude_fields
        }

        return SchemaDescriptor(
            entity_name=type_name,
            table=TableName(name=table.name, schema=table.schema),
            columns_by_property={key: col.name for key, col in replicated.items()},
            key_fields=match_key or tuple(primary_keys),
            sync_field=sync_field,
            primary_key_fields=tuple(k for k in primary_keys if k in replicated),
            auto_generated_key_fields=auto_keys & frozenset(replicated),
            delete_field=delete_field,
            binary_fields=frozenset(
                key for key, col in replicated.items() if isinstance(col.type, _BINARY_TYPES)
            ),
            column_types={key: col.type for key, col in replicated.items()},
            accessors={
                key: FieldAccessor.for_attribute(key)
                for key in [*replicated, sync_field, delete_field]
                if key is not None
            },
        )

    @staticmethod
    def _find_marked(
        type_name: str,
        columns: Mapping[str, Any],
        info_key: str,
        required: bool,
    ) -> str | None:
        marked = [key for key, col in columns.items() if col.info.get(info_key)]
        if len(marked) > 1 or (required and not marked):
            raise ConfigurationError(
                f"Type {type_name} must have one and only one property marked as {info_key}"
            )
        return marked[0] if marked else None
