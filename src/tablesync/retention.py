"""
retention.py - Tombstone retention and full snapshot resync.

Deletes are kept in the change log as tombstones until every active
replica has pulled past them. The purge horizon is the lowest
watermark among replicas that pulled recently; replicas that went
quiet for longer than the stale age are dropped from the calculation
and must resync from a snapshot when they return.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from tablesync.clients import ClientTracker, ReplicaWatermark
from tablesync.config import DEFAULT_STALE_CLIENT_AGE
from tablesync.db.connection import execute_in_transaction
from tablesync.db.dialects import SQLITE, Dialect
from tablesync.db.metadata import get_table_info
from tablesync.db.migrations import get_purged_through, set_last_server_version, set_purged_through
from tablesync.errors import ValidationError
from tablesync.log.entries import validate_row
from tablesync.log.repository import delete_entries_through, get_max_version
from tablesync.session import suppressed
from tablesync.utils.timestamps import parse_timestamp

logger = logging.getLogger("tablesync.retention")


@dataclass
class CollectResult:
    """Outcome of one retention pass."""
    removed_clients: list[str] = field(default_factory=list)
    purged_through: int = 0
    entries_removed: int = 0


class TombstoneManager:
    """
    Decides when change log entries may be discarded.

    Args:
        conn: Connection to the server database
        tracker: Replica watermark repository
        stale_age: Inactivity after which a replica stops holding
            back the purge horizon
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        tracker: ClientTracker | None = None,
        stale_age: timedelta = DEFAULT_STALE_CLIENT_AGE,
    ) -> None:
        self._conn = conn
        self._tracker = tracker or ClientTracker(conn)
        self._stale_age = stale_age

    def find_stale_clients(
        self, max_inactivity: timedelta | None = None, now: datetime | None = None
    ) -> list[ReplicaWatermark]:
        cutoff = (now or datetime.now(timezone.utc)) - (max_inactivity or self._stale_age)
        return [
            client for client in self._tracker.get_all()
            if parse_timestamp(client.last_sync_timestamp) < cutoff
        ]

    def cleanup_stale_clients(
        self, max_inactivity: timedelta | None = None, now: datetime | None = None
    ) -> list[str]:
        """Deregister stale replicas. Returns their origin ids."""
        removed = []
        for client in self.find_stale_clients(max_inactivity, now):
            if self._tracker.remove(client.origin_id):
                removed.append(client.origin_id)
                logger.info(
                    "Removed stale client %s (last sync %s at version %d)",
                    client.origin_id, client.last_sync_timestamp, client.last_sync_version,
                )
        return removed

    def safe_purge_version(self, now: datetime | None = None) -> int:
        """
        Highest version every active replica has already applied.

        Returns 0, meaning nothing may be purged, when no active
        replica is registered.
        """
        stale = {client.origin_id for client in self.find_stale_clients(now=now)}
        active = [c.last_sync_version for c in self._tracker.get_all() if c.origin_id not in stale]
        return min(active) if active else 0

    def purge(self, version: int) -> int:
        """
        Delete entries with version <= version and remember the point.

        The purge point never moves backwards and never passes the
        newest logged version.

        Returns:
            Number of entries removed
        """
        if version < 0:
            raise ValidationError("Purge version cannot be negative", field="version", value=version)

        def do_purge(conn: sqlite3.Connection) -> int:
            target = min(version, get_max_version(conn))
            if target <= get_purged_through(conn):
                return 0
            removed = delete_entries_through(conn, target)
            set_purged_through(conn, target)
            logger.info("Purged %d change log entries through version %d", removed, target)
            return removed

        return execute_in_transaction(self._conn, do_purge)

    def requires_full_resync(self, from_version: int) -> bool:
        """True when entries after from_version have already been purged."""
        return from_version < get_purged_through(self._conn)

    def collect(self, now: datetime | None = None) -> CollectResult:
        """Drop stale replicas, then purge up to the safe horizon."""
        result = CollectResult(removed_clients=self.cleanup_stale_clients(now=now))
        horizon = self.safe_purge_version(now=now)
        if horizon > 0:
            result.entries_removed = self.purge(horizon)
        result.purged_through = get_purged_through(self._conn)
        return result


@dataclass(frozen=True)
class Snapshot:
    """
    Full contents of the tracked tables at one log version.

    tables maps each table name to its rows; every row carries the
    primary key column.
    """
    version: int
    tables: dict[str, list[dict[str, Any]]]
    primary_keys: dict[str, str]


def create_snapshot(conn: sqlite3.Connection, table_names: Iterable[str]) -> Snapshot:
    """
    Read the tables and the current log version in one transaction
    so that the rows match the version.
    """
    names = sorted(table_names)

    def do_read(conn: sqlite3.Connection) -> Snapshot:
        tables: dict[str, list[dict[str, Any]]] = {}
        primary_keys: dict[str, str] = {}
        for name in names:
            table = get_table_info(conn, name)
            columns = ", ".join(f'"{c}"' for c in table.columns)
            cursor = conn.execute(f'SELECT {columns} FROM "{name}" ORDER BY "{table.primary_key}"')
            tables[name] = [dict(zip(table.columns, row)) for row in cursor]
            primary_keys[name] = table.primary_key
        # A fully purged log is empty but its versions are not reused
        version = max(get_max_version(conn), get_purged_through(conn))
        return Snapshot(version=version, tables=tables, primary_keys=primary_keys)

    return execute_in_transaction(conn, do_read)


def apply_snapshot(conn: sqlite3.Connection, snapshot: Snapshot, dialect: Dialect = SQLITE) -> int:
    """
    Replace local table contents with a snapshot.

    Rows absent from the snapshot are deleted and the rest upserted,
    all under suppression. Foreign keys are checked at commit so
    tables can be written in any order. The snapshot version becomes
    the new pull watermark.

    Returns:
        Number of rows written
    """
    def do_apply(conn: sqlite3.Connection) -> int:
        conn.execute("PRAGMA defer_foreign_keys = ON")
        written = 0
        with suppressed(conn):
            for name, rows in snapshot.tables.items():
                table = get_table_info(conn, name)
                pk = snapshot.primary_keys.get(name, table.primary_key)
                keep = {row[pk] for row in rows}
                existing = [r[0] for r in conn.execute(f'SELECT "{pk}" FROM "{name}"')]
                delete_sql = dialect.delete_sql(name, pk)
                for value in existing:
                    if value not in keep:
                        conn.execute(delete_sql, (value,))
                for row in rows:
                    row = validate_row(row, "row")
                    columns = list(row)
                    conn.execute(dialect.upsert_sql(name, columns, pk), [row[c] for c in columns])
                    written += 1
            set_last_server_version(conn, snapshot.version)
        return written

    written = execute_in_transaction(conn, do_apply)
    logger.info("Applied snapshot at version %d (%d rows)", snapshot.version, written)
    return written


def snapshot_to_wire(snapshot: Snapshot) -> dict[str, Any]:
    return {
        "version": snapshot.version,
        "tables": snapshot.tables,
        "primary_keys": snapshot.primary_keys,
    }


def snapshot_from_wire(data: Mapping[str, Any]) -> Snapshot:
    try:
        return Snapshot(
            version=int(data["version"]),
            tables={name: [validate_row(row, "row") for row in rows] for name, rows in data["tables"].items()},
            primary_keys=dict(data["primary_keys"]),
        )
    except KeyError as e:
        raise ValidationError(f"Snapshot is missing field {e.args[0]}", field=e.args[0]) from e
