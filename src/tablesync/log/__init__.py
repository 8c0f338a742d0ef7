"""Change log: entry types and log queries."""

from tablesync.log.entries import (
    ChangeLogEntry,
    Delete,
    Insert,
    Operation,
    Row,
    Update,
    entry_from_row,
    entry_from_wire,
    entry_to_wire,
    make_operation,
)
from tablesync.log.repository import (
    append_entry,
    count_entries,
    delete_entries_through,
    fetch_entries_since,
    get_latest_entry_for_key,
    get_max_version,
    get_min_version,
)

__all__ = [
    "ChangeLogEntry",
    "Insert",
    "Update",
    "Delete",
    "Operation",
    "Row",
    "make_operation",
    "entry_from_row",
    "entry_from_wire",
    "entry_to_wire",
    "fetch_entries_since",
    "get_latest_entry_for_key",
    "get_max_version",
    "get_min_version",
    "count_entries",
    "append_entry",
    "delete_entries_through",
]
