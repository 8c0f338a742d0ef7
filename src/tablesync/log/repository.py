"""
repository.py - Queries over the _sync_log table.

The log is append-only: rows are written by capture triggers (or by
relay of pushed changes) and removed only by retention purges.
"""

import sqlite3

from tablesync.errors import DatabaseError
from tablesync.log.entries import ChangeLogEntry, entry_from_row

_ENTRY_COLUMNS = "version, table_name, pk_value, operation, payload, origin, timestamp"


def fetch_entries_since(
    conn: sqlite3.Connection,
    from_version: int,
    limit: int,
    origin: str | None = None,
) -> list[ChangeLogEntry]:
    """
    Entries with version > from_version in ascending order.

    Args:
        conn: SQLite connection
        from_version: Exclusive lower bound
        limit: Maximum number of entries
        origin: Restrict to entries written by this origin
    """
    sql = f"SELECT {_ENTRY_COLUMNS} FROM _sync_log WHERE version > ?"
    params: list = [from_version]
    if origin is not None:
        sql += " AND origin = ?"
        params.append(origin)
    sql += " ORDER BY version ASC LIMIT ?"
    params.append(limit)
    try:
        rows = conn.execute(sql, params).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read change log: {e}", operation="fetch", sql=sql) from e
    return [entry_from_row(row) for row in rows]


def get_entry(conn: sqlite3.Connection, version: int) -> ChangeLogEntry | None:
    row = conn.execute(
        f"SELECT {_ENTRY_COLUMNS} FROM _sync_log WHERE version = ?", (version,)
    ).fetchone()
    return None if row is None else entry_from_row(row)


def get_latest_entry_for_key(
    conn: sqlite3.Connection, table_name: str, pk_text: str
) -> ChangeLogEntry | None:
    """Most recent logged write to one row, or None if the log has none."""
    row = conn.execute(
        f"SELECT {_ENTRY_COLUMNS} FROM _sync_log "
        "WHERE table_name = ? AND pk_value = ? ORDER BY version DESC LIMIT 1",
        (table_name, pk_text),
    ).fetchone()
    return None if row is None else entry_from_row(row)


def get_max_version(conn: sqlite3.Connection) -> int:
    """Highest version in the log, 0 when empty."""
    return conn.execute("SELECT COALESCE(MAX(version), 0) FROM _sync_log").fetchone()[0]


def get_min_version(conn: sqlite3.Connection) -> int:
    """Lowest retained version, 0 when empty."""
    return conn.execute("SELECT COALESCE(MIN(version), 0) FROM _sync_log").fetchone()[0]


def count_entries(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM _sync_log").fetchone()[0]


def append_entry(conn: sqlite3.Connection, entry: ChangeLogEntry) -> int:
    """
    Append a copy of an entry, keeping its origin and timestamp.

    The copy receives the next local version. Used when a hub records
    changes pushed to it so that other replicas can pull them.

    Returns:
        The newly assigned version
    """
    try:
        cursor = conn.execute(
            "INSERT INTO _sync_log (table_name, pk_value, operation, payload, origin, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                entry.table_name,
                entry.pk_text,
                entry.operation_name,
                entry.payload_text,
                entry.origin,
                entry.timestamp,
            ),
        )
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to append log entry: {e}", operation="append") from e
    return cursor.lastrowid


def delete_entries_through(conn: sqlite3.Connection, version: int) -> int:
    """Delete entries with version <= version. Returns the number removed."""
    try:
        cursor = conn.execute("DELETE FROM _sync_log WHERE version <= ?", (version,))
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to purge change log: {e}", operation="purge") from e
    return cursor.rowcount
