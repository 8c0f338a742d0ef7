"""
clients.py - Server-side bookkeeping of replica watermarks.

Each replica that pulls from this database gets one _sync_clients
row recording the highest version it has applied. The rows exist to
compute how much of the change log may be purged.
"""

import logging
import sqlite3
from dataclasses import dataclass

from tablesync.errors import DatabaseError, ValidationError
from tablesync.utils.timestamps import utc_now

logger = logging.getLogger("tablesync.clients")


@dataclass(frozen=True, slots=True)
class ReplicaWatermark:
    origin_id: str
    last_sync_version: int
    last_sync_timestamp: str
    created_at: str


class ClientTracker:
    """Repository over _sync_clients."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_all(self) -> list[ReplicaWatermark]:
        """All known replicas, lowest watermark first."""
        rows = self._conn.execute(
            "SELECT origin_id, last_sync_version, last_sync_timestamp, created_at "
            "FROM _sync_clients ORDER BY last_sync_version ASC, origin_id ASC"
        ).fetchall()
        return [ReplicaWatermark(*row) for row in rows]

    def get(self, origin_id: str) -> ReplicaWatermark | None:
        row = self._conn.execute(
            "SELECT origin_id, last_sync_version, last_sync_timestamp, created_at "
            "FROM _sync_clients WHERE origin_id = ?",
            (origin_id,),
        ).fetchone()
        return None if row is None else ReplicaWatermark(*row)

    def upsert(self, origin_id: str, last_sync_version: int, now: str | None = None) -> ReplicaWatermark:
        """
        Record that a replica has applied everything up to a version.

        Creates the row on first sight; created_at is kept afterwards.
        """
        if not origin_id:
            raise ValidationError("origin_id cannot be empty", field="origin_id")
        if last_sync_version < 0:
            raise ValidationError(
                "last_sync_version cannot be negative",
                field="last_sync_version",
                value=last_sync_version,
            )
        now = now or utc_now()
        try:
            self._conn.execute(
                "INSERT INTO _sync_clients (origin_id, last_sync_version, last_sync_timestamp, created_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(origin_id) DO UPDATE SET "
                "last_sync_version = excluded.last_sync_version, "
                "last_sync_timestamp = excluded.last_sync_timestamp",
                (origin_id, last_sync_version, now, now),
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to record client watermark: {e}", operation="upsert_client") from e
        logger.debug("Client %s at version %d", origin_id, last_sync_version)
        return self.get(origin_id)

    def remove(self, origin_id: str) -> bool:
        """Deregister a replica. Returns False if it was not known."""
        cursor = self._conn.execute("DELETE FROM _sync_clients WHERE origin_id = ?", (origin_id,))
        return cursor.rowcount > 0

    def min_version(self) -> int | None:
        """Lowest watermark across all replicas, None when there are none."""
        return self._conn.execute("SELECT MIN(last_sync_version) FROM _sync_clients").fetchone()[0]
