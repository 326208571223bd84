"""replisync - Resumable fan-out replication from one database to many."""

from replisync.config import EngineConfig, ReplicationConfig
from replisync.cycle import CycleResult, ReplicationCycle
from replisync.exceptions import (
    ConfigurationError,
    CycleError,
    InternalConsistencyError,
    LoadError,
    PersistError,
    ReplisyncError,
    RowSyncError,
    StatementError,
    TargetSyncError,
    TooManyParametersError,
)
from replisync.hashing import combine, combine2, key_hash
from replisync.ledger import ErrorLedger, SuccessMap, get_default_ledger
from replisync.metrics import SyncMetrics, TargetMetrics
from replisync.operations import delete, insert_if_absent, upsert
from replisync.schema import (
    FieldAccessor,
    SchemaDescriptor,
    SchemaResolver,
    SQLAlchemySchemaResolver,
    TableName,
)
from replisync.statements import (
    BuiltStatement,
    SqlDialect,
    StatementBuilder,
    StatementKind,
)
from replisync.stores import (
    SourceStore,
    SQLAlchemySourceStore,
    SQLAlchemyTargetStore,
    TargetStore,
)
from replisync.unit import EntitySyncUnit

# Version: Single source of truth from pyproject.toml
try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version("replisync")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

__all__ = [
    # Engine
    "ReplicationCycle",
    "CycleResult",
    "EntitySyncUnit",
    # Schema
    "SchemaDescriptor",
    "SchemaResolver",
    "SQLAlchemySchemaResolver",
    "FieldAccessor",
    "TableName",
    # Statements
    "StatementBuilder",
    "StatementKind",
    "SqlDialect",
    "BuiltStatement",
    "upsert",
    "delete",
    "insert_if_absent",
    # Stores
    "SourceStore",
    "TargetStore",
    "SQLAlchemySourceStore",
    "SQLAlchemyTargetStore",
    # Bookkeeping
    "ErrorLedger",
    "SuccessMap",
    "get_default_ledger",
    "SyncMetrics",
    "TargetMetrics",
    # Hashing
    "combine",
    "combine2",
    "key_hash",
    # Configuration
    "EngineConfig",
    "ReplicationConfig",
    # Exceptions
    "ReplisyncError",
    "ConfigurationError",
    "TooManyParametersError",
    "LoadError",
    "StatementError",
    "RowSyncError",
    "TargetSyncError",
    "PersistError",
    "InternalConsistencyError",
    "CycleError",
]
