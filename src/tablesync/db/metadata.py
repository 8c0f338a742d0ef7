"""
metadata.py - Table introspection for change capture.

Provides the column list and the single primary-key column of a
table. Everything else in the package consumes TableInfo rather
than querying the catalog directly.
"""

import sqlite3
from dataclasses import dataclass

from tablesync.config import RESERVED_TABLE_NAMES, SYNC_TABLE_PREFIX
from tablesync.errors import DatabaseError, SchemaError, ValidationError


@dataclass(frozen=True, slots=True)
class TableInfo:
    """Columns and primary key of one synced table."""
    name: str
    columns: tuple[str, ...]
    primary_key: str

    @property
    def non_key_columns(self) -> tuple[str, ...]:
        return tuple(c for c in self.columns if c != self.primary_key)


def validate_identifier(name: str, field: str = "table_name") -> None:
    """
    Validate that a table or column name is a plain identifier.

    Raises:
        ValidationError: If the name is empty or contains other characters
    """
    if not name:
        raise ValidationError(f"{field} cannot be empty", field=field)
    if not name.replace("_", "").isalnum() or name[0].isdigit():
        raise ValidationError(
            f"Identifier contains invalid characters: '{name}'",
            field=field,
            value=name,
        )


def validate_table_name(table_name: str) -> None:
    validate_identifier(table_name)
    if table_name in RESERVED_TABLE_NAMES or table_name.startswith(SYNC_TABLE_PREFIX):
        raise ValidationError(
            f"Cannot enable sync on reserved table '{table_name}'",
            field="table_name",
            value=table_name,
        )


def get_table_info(conn: sqlite3.Connection, table_name: str) -> TableInfo:
    """
    Read the columns and primary key of a table.

    Args:
        conn: SQLite connection
        table_name: Table to inspect

    Returns:
        TableInfo with columns in declaration order

    Raises:
        SchemaError: If the table does not exist or does not have
            exactly one primary-key column
    """
    validate_table_name(table_name)
    try:
        rows = conn.execute(f'PRAGMA table_info("{table_name}")').fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to read table info for '{table_name}': {e}",
            operation="table_info",
        ) from e

    if not rows:
        raise SchemaError(f"Table '{table_name}' does not exist", table_name=table_name)

    columns = tuple(row[1] for row in rows)
    # row[5] is the 1-based position within the primary key, 0 otherwise
    pk_columns = [row[1] for row in rows if row[5] > 0]

    if not pk_columns:
        raise SchemaError(
            f"Table '{table_name}' has no primary key. Sync requires a primary key.",
            table_name=table_name,
        )
    if len(pk_columns) > 1:
        raise SchemaError(
            f"Table '{table_name}' has a composite primary key",
            table_name=table_name,
            expected=1,
            actual=len(pk_columns),
        )

    return TableInfo(name=table_name, columns=columns, primary_key=pk_columns[0])


def list_user_tables(conn: sqlite3.Connection) -> list[str]:
    """Application tables in name order, excluding SQLite and sync tables."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' "
        "AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows if not row[0].startswith(SYNC_TABLE_PREFIX)]
