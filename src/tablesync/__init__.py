"""
tablesync - Trigger-based bi-directional table replication.

Captures row mutations with database triggers into one ordered change
log and lets replicas exchange and apply each other's changes in
verified batches until they converge.
"""

from tablesync.config import BatchConfig
from tablesync.coordinator import SyncCoordinator
from tablesync.engine import SyncEngine, SyncState
from tablesync.errors import (
    ConflictUnresolved,
    DatabaseError,
    FullResyncRequired,
    HashMismatch,
    RetryExhausted,
    SchemaError,
    SyncError,
    TransportError,
    ValidationError,
)
from tablesync.log.entries import ChangeLogEntry, Delete, Insert, Update
from tablesync.protocol.batch import SyncBatch
from tablesync.resolution import (
    ConflictContext,
    ConflictResolver,
    CustomResolver,
    LastWriteWinsResolver,
    ManualResolver,
    OriginPriorityResolver,
    OverwriteResolver,
    ResolutionResult,
    ResolutionStrategy,
    get_resolver,
)
from tablesync.session import suppressed

__version__ = "0.1.0"
__all__ = [
    # Core
    "SyncEngine",
    "SyncState",
    "SyncCoordinator",
    "BatchConfig",
    "ChangeLogEntry",
    "Insert",
    "Update",
    "Delete",
    "SyncBatch",
    "suppressed",
    # Conflict resolution
    "ResolutionStrategy",
    "ConflictResolver",
    "ConflictContext",
    "ResolutionResult",
    "LastWriteWinsResolver",
    "OriginPriorityResolver",
    "CustomResolver",
    "OverwriteResolver",
    "ManualResolver",
    "get_resolver",
    # Errors
    "SyncError",
    "SchemaError",
    "DatabaseError",
    "ValidationError",
    "RetryExhausted",
    "ConflictUnresolved",
    "FullResyncRequired",
    "HashMismatch",
    "TransportError",
]
