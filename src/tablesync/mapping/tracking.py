"""
tracking.py - Per-mapping sync progress.

Backed by _sync_mapping_state (watermark per mapping) and
_sync_record_hashes (last synced payload hash per source row).
"""

import sqlite3
from dataclasses import dataclass

from tablesync.errors import DatabaseError
from tablesync.log.entries import ChangeLogEntry, Delete
from tablesync.mapping.config import MappingDefinition, TrackingStrategy
from tablesync.utils.hashing import canonical_json, sha256_hex
from tablesync.utils.timestamps import utc_now


@dataclass(frozen=True)
class MappingSyncState:
    mapping_id: str
    last_synced_version: int
    last_sync_timestamp: str | None
    records_synced: int


def payload_hash(entry: ChangeLogEntry) -> str:
    return sha256_hex(canonical_json(entry.payload).encode("utf-8"))


class MappingStateStore:
    """Reads and updates tracking state for mappings."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_state(self, mapping_id: str) -> MappingSyncState | None:
        row = self._conn.execute(
            "SELECT mapping_id, last_synced_version, last_sync_timestamp, records_synced "
            "FROM _sync_mapping_state WHERE mapping_id = ?",
            (mapping_id,),
        ).fetchone()
        return None if row is None else MappingSyncState(*row)

    def get_record_hash(self, mapping_id: str, source_pk: str) -> str | None:
        row = self._conn.execute(
            "SELECT payload_hash FROM _sync_record_hashes WHERE mapping_id = ? AND source_pk = ?",
            (mapping_id, source_pk),
        ).fetchone()
        return None if row is None else row[0]

    def should_sync(self, mapping: MappingDefinition, entry: ChangeLogEntry) -> bool:
        """
        Decide whether an entry still has to be written for a mapping.

        Deletes always sync. Without tracking every entry syncs.
        """
        tracking = mapping.sync_tracking
        if not tracking.enabled or isinstance(entry.operation, Delete):
            return True

        if tracking.strategy == TrackingStrategy.VERSION:
            state = self.get_state(mapping.id)
            return state is None or entry.version > state.last_synced_version
        if tracking.strategy == TrackingStrategy.HASH:
            return self.get_record_hash(mapping.id, entry.pk_text) != payload_hash(entry)
        if tracking.strategy == TrackingStrategy.TIMESTAMP:
            state = self.get_state(mapping.id)
            return (
                state is None
                or state.last_sync_timestamp is None
                or entry.timestamp > state.last_sync_timestamp
            )
        # External tracking is owned by the application
        return True

    def record_synced(self, mapping: MappingDefinition, entry: ChangeLogEntry) -> None:
        now = utc_now()
        try:
            self._conn.execute(
                "INSERT INTO _sync_mapping_state "
                "(mapping_id, last_synced_version, last_sync_timestamp, records_synced) "
                "VALUES (?, ?, ?, 1) "
                "ON CONFLICT(mapping_id) DO UPDATE SET "
                "last_synced_version = MAX(last_synced_version, excluded.last_synced_version), "
                "last_sync_timestamp = CASE WHEN last_sync_timestamp IS NULL "
                "OR excluded.last_sync_timestamp > last_sync_timestamp "
                "THEN excluded.last_sync_timestamp ELSE last_sync_timestamp END, "
                "records_synced = records_synced + 1",
                (mapping.id, entry.version, entry.timestamp),
            )
            if mapping.sync_tracking.strategy == TrackingStrategy.HASH:
                if isinstance(entry.operation, Delete):
                    self._conn.execute(
                        "DELETE FROM _sync_record_hashes WHERE mapping_id = ? AND source_pk = ?",
                        (mapping.id, entry.pk_text),
                    )
                else:
                    self._conn.execute(
                        "INSERT INTO _sync_record_hashes (mapping_id, source_pk, payload_hash, synced_at) "
                        "VALUES (?, ?, ?, ?) "
                        "ON CONFLICT(mapping_id, source_pk) DO UPDATE SET "
                        "payload_hash = excluded.payload_hash, synced_at = excluded.synced_at",
                        (mapping.id, entry.pk_text, payload_hash(entry), now),
                    )
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to record mapping state for {mapping.id}: {e}",
                operation="mapping_state",
            ) from e

    def reset(self, mapping_id: str) -> None:
        """Forget progress so the mapping re-syncs from scratch."""
        self._conn.execute("DELETE FROM _sync_mapping_state WHERE mapping_id = ?", (mapping_id,))
        self._conn.execute("DELETE FROM _sync_record_hashes WHERE mapping_id = ?", (mapping_id,))
