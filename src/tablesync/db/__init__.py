"""Database layer: connections, sync schema, metadata, dialects and triggers."""

from tablesync.db.connection import create_connection, execute_in_transaction, savepoint
from tablesync.db.dialects import POSTGRES, SQLITE, Dialect, PostgresDialect, SQLiteDialect, get_dialect
from tablesync.db.metadata import TableInfo, get_table_info, list_user_tables
from tablesync.db.migrations import initialize_sync_tables
from tablesync.db.triggers import (
    TriggerInstallResult,
    get_tracked_tables,
    has_triggers,
    install_triggers,
    install_triggers_for_tables,
    remove_triggers,
)

__all__ = [
    # Connection
    "create_connection",
    "execute_in_transaction",
    "savepoint",
    "initialize_sync_tables",
    # Metadata
    "TableInfo",
    "get_table_info",
    "list_user_tables",
    # Dialects
    "Dialect",
    "SQLiteDialect",
    "PostgresDialect",
    "SQLITE",
    "POSTGRES",
    "get_dialect",
    # Triggers
    "TriggerInstallResult",
    "install_triggers",
    "install_triggers_for_tables",
    "remove_triggers",
    "has_triggers",
    "get_tracked_tables",
]
