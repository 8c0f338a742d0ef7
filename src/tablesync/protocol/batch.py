"""
batch.py - Batched change enumeration and its wire format.

A batch is an ordered slice of the change log above an exclusive
watermark. Enumeration is a plain read, so it may run alongside
capture and only sees committed versions.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

from tablesync.config import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE
from tablesync.db.migrations import get_purged_through
from tablesync.errors import FullResyncRequired, HashMismatch, ValidationError
from tablesync.log.entries import ChangeLogEntry, entry_from_wire, entry_to_wire
from tablesync.log.repository import fetch_entries_since
from tablesync.utils.hashing import compute_batch_hash, verify_hash

logger = logging.getLogger("tablesync.protocol")


@dataclass(frozen=True)
class SyncBatch:
    """
    One page of changes.

    to_version is the last entry's version, or from_version when the
    batch is empty, so it can always be stored as the next watermark.
    """
    changes: tuple[ChangeLogEntry, ...]
    from_version: int
    to_version: int
    has_more: bool
    batch_hash: str

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes


def clamp_batch_size(batch_size: int | None) -> int:
    if batch_size is None:
        return DEFAULT_BATCH_SIZE
    return max(1, min(int(batch_size), MAX_BATCH_SIZE))


def make_batch(
    changes: list[ChangeLogEntry], from_version: int, has_more: bool = False
) -> SyncBatch:
    """Build a batch (with hash) from entries already in version order."""
    return SyncBatch(
        changes=tuple(changes),
        from_version=from_version,
        to_version=changes[-1].version if changes else from_version,
        has_more=has_more,
        batch_hash=compute_batch_hash(changes),
    )


def fetch_batch(
    conn: sqlite3.Connection,
    from_version: int,
    batch_size: int = DEFAULT_BATCH_SIZE,
    origin: str | None = None,
    check_retention: bool = True,
) -> SyncBatch:
    """
    Read the next batch of changes after from_version.

    Args:
        conn: SQLite connection
        from_version: Exclusive lower bound (the caller's watermark)
        batch_size: Maximum entries, clamped to [1, MAX_BATCH_SIZE]
        origin: Only include entries written by this origin
        check_retention: Refuse watermarks older than the purge point

    Raises:
        FullResyncRequired: If entries after from_version were purged
    """
    if from_version < 0:
        raise ValidationError("from_version cannot be negative", field="from_version", value=from_version)
    if check_retention:
        purged_through = get_purged_through(conn)
        if from_version < purged_through:
            raise FullResyncRequired(from_version, purged_through)

    size = clamp_batch_size(batch_size)
    # One extra row tells us whether another batch follows
    entries = fetch_entries_since(conn, from_version, size + 1, origin=origin)
    has_more = len(entries) > size
    batch = make_batch(entries[:size], from_version, has_more)
    logger.debug(
        "Fetched batch (%d, %d] with %d changes, has_more=%s",
        batch.from_version, batch.to_version, len(batch), has_more,
    )
    return batch


def iter_batches(
    conn: sqlite3.Connection,
    from_version: int,
    batch_size: int = DEFAULT_BATCH_SIZE,
    origin: str | None = None,
) -> Iterator[SyncBatch]:
    """Yield consecutive non-empty batches until the log is exhausted."""
    current = from_version
    while True:
        batch = fetch_batch(conn, current, batch_size, origin=origin)
        if batch.is_empty:
            return
        yield batch
        if not batch.has_more:
            return
        current = batch.to_version


def verify_batch(batch: SyncBatch) -> bool:
    return verify_hash(compute_batch_hash(batch.changes), batch.batch_hash)


def batch_to_wire(batch: SyncBatch) -> dict[str, Any]:
    return {
        "changes": [entry_to_wire(entry) for entry in batch.changes],
        "from_version": batch.from_version,
        "to_version": batch.to_version,
        "has_more": batch.has_more,
        "batch_hash": batch.batch_hash,
    }


def batch_from_wire(data: Mapping[str, Any], verify: bool = True) -> SyncBatch:
    """
    Decode a batch response.

    Raises:
        ValidationError: If the response is malformed or out of order
        HashMismatch: If verify is set and the hash does not match
    """
    try:
        changes = [entry_from_wire(item) for item in data["changes"]]
        from_version = int(data["from_version"])
        to_version = int(data["to_version"])
        has_more = bool(data["has_more"])
        batch_hash = str(data["batch_hash"])
    except KeyError as e:
        raise ValidationError(f"Batch is missing field {e.args[0]}", field=e.args[0]) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed batch: {e}") from e

    previous = from_version
    for entry in changes:
        if entry.version <= previous:
            raise ValidationError(
                "Batch versions must be strictly increasing",
                field="version",
                value=entry.version,
            )
        previous = entry.version

    batch = SyncBatch(tuple(changes), from_version, to_version, has_more, batch_hash)
    if verify:
        actual = compute_batch_hash(batch.changes)
        if not verify_hash(actual, batch_hash):
            raise HashMismatch(expected=batch_hash, actual=actual)
    return batch
