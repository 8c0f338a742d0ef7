"""
triggers.py - Capture trigger management.

Triggers execute inside the user's own write transaction, appending
one _sync_log row per mutated row unless capture is suppressed.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Iterable

from tablesync.db.dialects import SQLITE, TRIGGER_OPERATIONS, Dialect, trigger_name
from tablesync.db.metadata import get_table_info, validate_table_name
from tablesync.errors import DatabaseError, SchemaError, SyncError

logger = logging.getLogger("tablesync.triggers")


@dataclass
class TriggerInstallResult:
    """Outcome of installing triggers on several tables."""
    installed: list[str] = field(default_factory=list)
    failed: dict[str, SyncError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def install_triggers(
    conn: sqlite3.Connection, table_name: str, dialect: Dialect = SQLITE
) -> None:
    """
    Install INSERT, UPDATE, DELETE capture triggers for a table.

    Existing triggers are dropped first, so calling this again after
    a schema change regenerates them with the current column list.

    Raises:
        ValidationError: If table name is invalid
        SchemaError: If the table is missing or lacks a single primary key
    """
    table = get_table_info(conn, table_name)
    statements = dialect.drop_trigger_statements(table.name) + dialect.create_trigger_statements(table)
    try:
        for sql in statements:
            conn.execute(sql)
    except sqlite3.Error as e:
        raise SchemaError(
            f"Failed to create triggers for table '{table_name}': {e}",
            table_name=table_name,
        ) from e
    logger.info("Installed capture triggers on %s (pk=%s)", table.name, table.primary_key)


def install_triggers_for_tables(
    conn: sqlite3.Connection, table_names: Iterable[str], dialect: Dialect = SQLITE
) -> TriggerInstallResult:
    """
    Install triggers on many tables.

    A failure on one table is recorded and does not stop the others.
    """
    result = TriggerInstallResult()
    for table_name in table_names:
        try:
            install_triggers(conn, table_name, dialect)
        except SyncError as e:
            logger.warning("Skipping table %s: %s", table_name, e)
            result.failed[table_name] = e
        else:
            result.installed.append(table_name)
    return result


def remove_triggers(
    conn: sqlite3.Connection, table_name: str, dialect: Dialect = SQLITE
) -> None:
    validate_table_name(table_name)
    try:
        for sql in dialect.drop_trigger_statements(table_name):
            conn.execute(sql)
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to remove triggers for table '{table_name}': {e}",
            operation="drop_triggers",
        ) from e
    logger.info("Removed capture triggers from %s", table_name)


def has_triggers(conn: sqlite3.Connection, table_name: str) -> bool:
    """
    Check if capture triggers exist for a table.

    Returns:
        True if all three triggers exist
    """
    expected = {trigger_name(table_name, op) for op in TRIGGER_OPERATIONS}
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'trigger' AND tbl_name = ?",
        (table_name,),
    ).fetchall()
    return expected.issubset({row[0] for row in rows})


def get_tracked_tables(conn: sqlite3.Connection) -> list[str]:
    """Tables carrying a complete set of capture triggers, in name order."""
    rows = conn.execute(
        "SELECT DISTINCT tbl_name FROM sqlite_master "
        "WHERE type = 'trigger' AND name LIKE '%\\_sync\\_%' ESCAPE '\\' ORDER BY tbl_name"
    ).fetchall()
    return [row[0] for row in rows if has_triggers(conn, row[0])]
