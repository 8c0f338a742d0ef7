"""
engine.py - Main sync engine.

The SyncEngine is the primary public interface for one replica
database. It coordinates:
- Database initialization and origin handling
- Enabling capture on tables
- Batched enumeration of the change log
- Applying remote batches and snapshots
- Replica watermarks, retention and subscriptions
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from tablesync.apply.applier import BatchApplyResult, ChangeApplier
from tablesync.clients import ClientTracker, ReplicaWatermark
from tablesync.config import BatchConfig, DEFAULT_STALE_CLIENT_AGE
from tablesync.db.connection import create_connection
from tablesync.db.dialects import SQLITE, Dialect
from tablesync.db.migrations import (
    get_last_push_version,
    get_last_server_version,
    get_origin_id,
    get_purged_through,
    initialize_sync_tables,
    regenerate_origin,
    set_last_push_version,
    set_last_server_version,
)
from tablesync.db.triggers import (
    TriggerInstallResult,
    get_tracked_tables,
    has_triggers,
    install_triggers,
    install_triggers_for_tables,
    remove_triggers,
)
from tablesync.errors import SyncError
from tablesync.log.entries import ChangeLogEntry
from tablesync.log.repository import count_entries, get_max_version, get_min_version
from tablesync.mapping.config import MappingConfig, SyncDirection
from tablesync.mapping.engine import MappingEngine
from tablesync.metrics import SyncLogger
from tablesync.protocol.batch import SyncBatch, batch_from_wire, fetch_batch
from tablesync.resolution import ConflictResolver, LastWriteWinsResolver
from tablesync.retention import Snapshot, TombstoneManager, apply_snapshot, create_snapshot
from tablesync.subscriptions import SubscriptionManager
from tablesync.utils.hashing import compute_batch_hash, compute_database_hash

logger = logging.getLogger("tablesync.engine")


@dataclass(frozen=True)
class SyncState:
    """Snapshot of a replica's sync bookkeeping."""
    origin_id: str
    max_version: int
    min_version: int
    entry_count: int
    purged_through: int
    last_server_version: int
    last_push_version: int
    tracked_tables: tuple[str, ...]
    client_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin_id": self.origin_id,
            "max_version": self.max_version,
            "min_version": self.min_version,
            "entry_count": self.entry_count,
            "purged_through": self.purged_through,
            "last_server_version": self.last_server_version,
            "last_push_version": self.last_push_version,
            "tracked_tables": list(self.tracked_tables),
            "client_count": self.client_count,
        }


class SyncEngine:
    """
    Core engine for one synchronized database.

    Args:
        db_path: Path to the SQLite database
        conflict_resolver: Decides conflicting writes; defaults to LWW
        mapping_config: Optional cross-schema mapping for applied and pushed changes
        batch_config: Batch size and retry bounds
        dialect: SQL dialect for generated statements
    """

    def __init__(
        self,
        db_path: str,
        conflict_resolver: ConflictResolver | None = None,
        mapping_config: MappingConfig | None = None,
        batch_config: BatchConfig = BatchConfig(),
        dialect: Dialect = SQLITE,
    ):
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._origin_id: str | None = None
        self._resolver = conflict_resolver if conflict_resolver is not None else LastWriteWinsResolver()
        self._mapper = MappingEngine(mapping_config) if mapping_config is not None else None
        self._batch_config = batch_config
        self._dialect = dialect
        # One apply session per database at a time
        self._apply_lock = threading.Lock()
        self._tracker: ClientTracker | None = None
        self._tombstones: TombstoneManager | None = None
        self._subscriptions: SubscriptionManager | None = None
        self._events = SyncLogger("tablesync.engine")

    def __enter__(self) -> "SyncEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._tracker = self._tombstones = self._subscriptions = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = create_connection(self._db_path)
        return self._conn

    @property
    def batch_config(self) -> BatchConfig:
        return self._batch_config

    @property
    def origin_id(self) -> str:
        if self._origin_id is None:
            self._origin_id = get_origin_id(self.connection)
        return self._origin_id

    def initialize(self) -> str:
        """Create sync tables if needed. Returns this replica's origin."""
        self._origin_id = initialize_sync_tables(self.connection)
        return self._origin_id

    def regenerate_origin(self) -> str:
        """Give a copied database its own origin."""
        self._origin_id = regenerate_origin(self.connection)
        logger.info("Regenerated origin: %s", self._origin_id)
        return self._origin_id

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def enable_sync_for_table(self, table_name: str) -> None:
        """Install (or regenerate) capture triggers on a table."""
        install_triggers(self.connection, table_name, self._dialect)

    def enable_sync_for_tables(self, table_names: Iterable[str]) -> TriggerInstallResult:
        return install_triggers_for_tables(self.connection, table_names, self._dialect)

    def disable_sync_for_table(self, table_name: str) -> None:
        remove_triggers(self.connection, table_name, self._dialect)

    def is_sync_enabled(self, table_name: str) -> bool:
        return has_triggers(self.connection, table_name)

    def tracked_tables(self) -> list[str]:
        return get_tracked_tables(self.connection)

    # -------------------------------------------------------------------------
    # Enumeration and apply
    # -------------------------------------------------------------------------

    def get_changes(
        self,
        from_version: int,
        batch_size: int | None = None,
        origin: str | None = None,
    ) -> SyncBatch:
        """
        Next batch of log entries after from_version.

        Raises:
            FullResyncRequired: If from_version predates the purge point
        """
        return fetch_batch(
            self.connection,
            from_version,
            batch_size or self._batch_config.batch_size,
            origin=origin,
        )

    def get_local_changes(self, from_version: int, batch_size: int | None = None) -> SyncBatch:
        """Next batch of entries written by this replica, for pushing."""
        return fetch_batch(
            self.connection,
            from_version,
            batch_size or self._batch_config.batch_size,
            origin=self.origin_id,
            check_retention=False,
        )

    def map_outgoing(self, batch: SyncBatch) -> SyncBatch:
        """
        Apply push-direction mappings to a local batch before it is sent.

        The result keeps the source batch's version bounds, so the push
        watermark moves past entries that map to nothing. A multi-target
        mapping yields several entries sharing one source version.
        """
        if self._mapper is None or batch.is_empty:
            return batch
        changes: list[ChangeLogEntry] = []
        for entry in batch.changes:
            mapping_result = self._mapper.map_entry(entry, SyncDirection.PUSH)
            if not mapping_result.mapped:
                logger.debug("Not pushing version %d: %s", entry.version, mapping_result.skip_reason)
            elif mapping_result.mapping is None:
                changes.append(entry)
            else:
                changes.extend(target.to_entry(entry) for target in mapping_result.mapped)
        return SyncBatch(
            changes=tuple(changes),
            from_version=batch.from_version,
            to_version=batch.to_version,
            has_more=batch.has_more,
            batch_hash=compute_batch_hash(changes),
        )

    def apply_changes(
        self, entries: Sequence[ChangeLogEntry], record_relay: bool = False
    ) -> BatchApplyResult:
        """
        Apply remote entries atomically.

        Args:
            entries: Entries in ascending version order
            record_relay: Re-log applied entries under their original
                origin so that other replicas can pull them

        Raises:
            RetryExhausted, ConflictUnresolved, SchemaError, DatabaseError
        """
        applier = ChangeApplier(
            self.connection,
            self.origin_id,
            resolver=self._resolver,
            mapper=self._mapper,
            dialect=self._dialect,
            max_retry_passes=self._batch_config.max_retry_passes,
            record_relay=record_relay,
        )
        source = entries[0].origin if entries else ""
        with self._apply_lock:
            try:
                result = applier.apply_batch(entries)
            except SyncError as e:
                self._events.batch_failed(source, str(e))
                raise
        self._events.batch_applied(
            source,
            result.applied_count,
            result.skipped_count,
            result.conflict_count,
            result.conflicts_lost,
        )
        if result.applied:
            self.subscriptions.notify(result.applied)
        return result

    def apply_wire_batch(self, data: Mapping[str, Any], record_relay: bool = False) -> BatchApplyResult:
        """Decode, verify and apply a batch in wire format."""
        batch = batch_from_wire(data)
        return self.apply_changes(batch.changes, record_relay=record_relay)

    # -------------------------------------------------------------------------
    # Watermarks
    # -------------------------------------------------------------------------

    def get_last_server_version(self) -> int:
        return get_last_server_version(self.connection)

    def set_last_server_version(self, version: int) -> None:
        set_last_server_version(self.connection, version)

    def get_last_push_version(self) -> int:
        return get_last_push_version(self.connection)

    def set_last_push_version(self, version: int) -> None:
        set_last_push_version(self.connection, version)

    def get_state(self) -> SyncState:
        conn = self.connection
        return SyncState(
            origin_id=self.origin_id,
            max_version=get_max_version(conn),
            min_version=get_min_version(conn),
            entry_count=count_entries(conn),
            purged_through=get_purged_through(conn),
            last_server_version=get_last_server_version(conn),
            last_push_version=get_last_push_version(conn),
            tracked_tables=tuple(get_tracked_tables(conn)),
            client_count=len(self.tracker.get_all()),
        )

    # -------------------------------------------------------------------------
    # Server-side bookkeeping
    # -------------------------------------------------------------------------

    @property
    def tracker(self) -> ClientTracker:
        if self._tracker is None:
            self._tracker = ClientTracker(self.connection)
        return self._tracker

    @property
    def tombstones(self) -> TombstoneManager:
        if self._tombstones is None:
            self._tombstones = TombstoneManager(self.connection, self.tracker, DEFAULT_STALE_CLIENT_AGE)
        return self._tombstones

    @property
    def subscriptions(self) -> SubscriptionManager:
        if self._subscriptions is None:
            self._subscriptions = SubscriptionManager(self.connection)
        return self._subscriptions

    def register_client(self, origin_id: str, last_sync_version: int) -> ReplicaWatermark:
        return self.tracker.upsert(origin_id, last_sync_version)

    # -------------------------------------------------------------------------
    # Verification and snapshots
    # -------------------------------------------------------------------------

    def database_hash(self, table_names: Iterable[str] | None = None) -> str:
        tables = self.tracked_tables() if table_names is None else list(table_names)
        return compute_database_hash(self.connection, tables)

    def create_snapshot(self, table_names: Iterable[str] | None = None) -> Snapshot:
        tables = self.tracked_tables() if table_names is None else list(table_names)
        return create_snapshot(self.connection, tables)

    def apply_snapshot(self, snapshot: Snapshot) -> int:
        with self._apply_lock:
            return apply_snapshot(self.connection, snapshot, self._dialect)
