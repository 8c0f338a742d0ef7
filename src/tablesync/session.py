"""
session.py - Capture suppression.

While a remote batch is applied, the capture triggers must stay
dormant, otherwise the replica would re-log (and re-send) changes
it only received. The flag lives in the single _sync_session row
and is only ever touched through the suppressed() scope.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from tablesync.errors import DatabaseError

logger = logging.getLogger("tablesync.session")


def _set_active(conn: sqlite3.Connection, active: bool) -> None:
    try:
        conn.execute("UPDATE _sync_session SET sync_active = ?", (1 if active else 0,))
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to {'enable' if active else 'disable'} capture suppression: {e}",
            operation="suppression",
        ) from e


def is_suppressed(conn: sqlite3.Connection) -> bool:
    row = conn.execute("SELECT sync_active FROM _sync_session LIMIT 1").fetchone()
    return bool(row and row[0])


@contextmanager
def suppressed(conn: sqlite3.Connection) -> Iterator[None]:
    """
    Suppress capture triggers for the duration of the block.

    The flag is cleared on every exit path, including errors. When
    used inside a transaction the set and clear commit together, so
    other connections never observe the flag raised.
    """
    _set_active(conn, True)
    logger.debug("Capture suppression enabled")
    try:
        yield
    finally:
        _set_active(conn, False)
        logger.debug("Capture suppression disabled")
