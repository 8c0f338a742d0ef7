"""
hashing.py - Canonical JSON and SHA-256 hashing.

SHA-256 is used for:
- Batch hashes (integrity of a pulled batch)
- Full database hashes (out-of-band convergence checks)
- Mapping record hashes (change detection)

All hashing is deterministic: same input = same output.
"""

import hashlib
import hmac
import json
import sqlite3
from typing import Any, Iterable

from tablesync.errors import ValidationError


def canonical_json(value: Any) -> str:
    """
    Serialize to canonical JSON.

    Keys are sorted lexicographically and no insignificant whitespace
    is emitted. Non-ASCII characters are kept as UTF-8.
    """
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Value is not JSON serializable: {e}", value=value) from e


def sha256_hex(data: bytes) -> str:
    """
    Compute SHA-256 hash and return as hex string.

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(data).hexdigest()


def compute_batch_hash(entries: Iterable[Any]) -> str:
    """
    Hash a sequence of change log entries.

    Each entry contributes the line
    ``version:table_name:pk_value:operation:payload\\n`` with pk_value
    and payload in canonical JSON (``null`` for deletes). Entries are
    hashed in the order given; callers pass them in version order.
    """
    hasher = hashlib.sha256()
    for entry in entries:
        payload = entry.payload
        line = (
            f"{entry.version}:{entry.table_name}:{canonical_json(entry.pk_value)}:"
            f"{entry.operation_name}:{'null' if payload is None else canonical_json(payload)}\n"
        )
        hasher.update(line.encode("utf-8"))
    return hasher.hexdigest()


def compute_database_hash(conn: sqlite3.Connection, table_names: Iterable[str]) -> str:
    """
    Hash the full contents of the given tables.

    Tables are visited in name order and rows in primary-key order.
    Each table contributes its name followed by one canonical JSON
    line per row. Expensive: meant for convergence checks, not for
    the apply path.
    """
    from tablesync.db.metadata import get_table_info

    hasher = hashlib.sha256()
    for table_name in sorted(table_names):
        table = get_table_info(conn, table_name)
        hasher.update(f"{table_name}\n".encode("utf-8"))
        columns = ", ".join(f'"{c}"' for c in table.columns)
        cursor = conn.execute(
            f'SELECT {columns} FROM "{table_name}" ORDER BY "{table.primary_key}"'
        )
        for row in cursor:
            record = dict(zip(table.columns, row))
            hasher.update(f"{canonical_json(record)}\n".encode("utf-8"))
    return hasher.hexdigest()


def verify_hash(actual: str, expected: str) -> bool:
    """Compare two hex digests in constant time."""
    return hmac.compare_digest(actual.lower(), expected.lower())
