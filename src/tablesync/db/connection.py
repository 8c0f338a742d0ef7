"""
connection.py - SQLite database connection management.

Handles connection creation, PRAGMA configuration and
transaction helpers shared by every writer in the package.

All connections use WAL mode for concurrent read/write.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from tablesync.config import SQLITE_PRAGMAS
from tablesync.errors import DatabaseError, SyncError

logger = logging.getLogger("tablesync.db")


def create_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a new SQLite connection with proper configuration.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Configured sqlite3.Connection

    Raises:
        DatabaseError: If connection fails
    """
    try:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to connect to database: {e}",
            operation="connect",
        ) from e

    _apply_pragmas(conn)
    logger.debug("Opened connection to %s", db_path)
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    for pragma, value in SQLITE_PRAGMAS.items():
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to set PRAGMA {pragma}: {e}",
                operation="pragma",
                sql=f"PRAGMA {pragma} = {value}",
            ) from e


def execute_in_transaction(
    conn: sqlite3.Connection,
    operation: Callable[[sqlite3.Connection], Any],
) -> Any:
    """
    Execute an operation within an EXCLUSIVE transaction.

    Ensures atomicity: all changes commit or all rollback.
    SyncError subclasses raised by the operation propagate unchanged
    after the rollback; driver errors are wrapped in DatabaseError.

    Args:
        conn: SQLite connection
        operation: Callable that performs database operations

    Returns:
        Result of operation
    """
    try:
        conn.execute("BEGIN EXCLUSIVE")
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to begin transaction: {e}",
            operation="begin",
        ) from e

    try:
        result = operation(conn)
        conn.execute("COMMIT")
        return result
    except SyncError:
        conn.execute("ROLLBACK")
        raise
    except sqlite3.Error as e:
        conn.execute("ROLLBACK")
        raise DatabaseError(
            f"Transaction failed: {e}",
            operation="transaction",
        ) from e
    except BaseException:
        conn.execute("ROLLBACK")
        raise


@contextmanager
def savepoint(conn: sqlite3.Connection, name: str = "tablesync_entry") -> Iterator[None]:
    """
    Run a block inside a SAVEPOINT.

    On error only the block's own writes are undone; the enclosing
    transaction stays usable. The original exception is re-raised.
    """
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    else:
        conn.execute(f"RELEASE SAVEPOINT {name}")
