"""
migrations.py - Database initialization and sync state management.

Handles creation of sync tables and access to the _sync_state
key/value store (origin id and replication cursors).
"""

import logging
import sqlite3
import uuid

from tablesync.config import (
    STATE_KEY_LAST_PUSH_VERSION,
    STATE_KEY_LAST_SERVER_VERSION,
    STATE_KEY_ORIGIN_ID,
    STATE_KEY_PURGED_THROUGH,
)
from tablesync.db.schema import ALL_SCHEMA_STATEMENTS
from tablesync.errors import DatabaseError, SchemaError

logger = logging.getLogger("tablesync.db")


def initialize_sync_tables(conn: sqlite3.Connection) -> str:
    """
    Create all sync tables and seed the state rows.

    This is idempotent: can be called multiple times safely.
    If already initialized, returns the existing origin id.

    Args:
        conn: SQLite connection

    Returns:
        Origin id of this replica (UUID-v4 string)

    Raises:
        DatabaseError: If schema creation fails
    """
    try:
        for statement in ALL_SCHEMA_STATEMENTS:
            # Split multi-statement strings
            for sql in statement.strip().split(";"):
                sql = sql.strip()
                if sql:
                    conn.execute(sql)

        conn.execute(
            "INSERT OR IGNORE INTO _sync_state (key, value) VALUES (?, '')",
            (STATE_KEY_ORIGIN_ID,),
        )
        for key in (
            STATE_KEY_LAST_SERVER_VERSION,
            STATE_KEY_LAST_PUSH_VERSION,
            STATE_KEY_PURGED_THROUGH,
        ):
            conn.execute(
                "INSERT OR IGNORE INTO _sync_state (key, value) VALUES (?, '0')",
                (key,),
            )

        if conn.execute("SELECT COUNT(*) FROM _sync_session").fetchone()[0] == 0:
            conn.execute("INSERT INTO _sync_session (sync_active) VALUES (0)")
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to create sync tables: {e}",
            operation="create_tables",
        ) from e

    origin_id = get_state(conn, STATE_KEY_ORIGIN_ID)
    if not origin_id:
        origin_id = regenerate_origin(conn)
        logger.info("Initialized sync tables with origin %s", origin_id)
    return origin_id


def regenerate_origin(conn: sqlite3.Connection) -> str:
    """
    Assign this replica a fresh origin id.

    Must be called on a copied database file so that the copy and the
    original do not share an origin (they would skip each other's
    changes as echoes).
    """
    origin_id = str(uuid.uuid4())
    set_state(conn, STATE_KEY_ORIGIN_ID, origin_id)
    return origin_id


def get_state(conn: sqlite3.Connection, key: str) -> str:
    """
    Read a value from _sync_state.

    Raises:
        SchemaError: If sync tables are missing or the key is not set
    """
    try:
        row = conn.execute(
            "SELECT value FROM _sync_state WHERE key = ?", (key,)
        ).fetchone()
    except sqlite3.OperationalError as e:
        raise SchemaError(f"Database not initialized: {e}") from e
    if row is None:
        raise SchemaError(f"Database not initialized: {key} not found")
    return row[0]


def set_state(conn: sqlite3.Connection, key: str, value: str | int) -> None:
    try:
        conn.execute(
            "INSERT INTO _sync_state (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, str(value)),
        )
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to update sync state '{key}': {e}",
            operation="set_state",
        ) from e


def get_origin_id(conn: sqlite3.Connection) -> str:
    origin_id = get_state(conn, STATE_KEY_ORIGIN_ID)
    if not origin_id:
        raise SchemaError("Database not initialized: origin_id is empty")
    return origin_id


def get_last_server_version(conn: sqlite3.Connection) -> int:
    return int(get_state(conn, STATE_KEY_LAST_SERVER_VERSION))


def set_last_server_version(conn: sqlite3.Connection, version: int) -> None:
    set_state(conn, STATE_KEY_LAST_SERVER_VERSION, version)


def get_last_push_version(conn: sqlite3.Connection) -> int:
    return int(get_state(conn, STATE_KEY_LAST_PUSH_VERSION))


def set_last_push_version(conn: sqlite3.Connection, version: int) -> None:
    set_state(conn, STATE_KEY_LAST_PUSH_VERSION, version)


def get_purged_through(conn: sqlite3.Connection) -> int:
    return int(get_state(conn, STATE_KEY_PURGED_THROUGH))


def set_purged_through(conn: sqlite3.Connection, version: int) -> None:
    set_state(conn, STATE_KEY_PURGED_THROUGH, version)
