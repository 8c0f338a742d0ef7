"""
config.py - Configuration constants for tablesync.

All configuration is immutable and defined at module level.
No mutable global state is permitted.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Final

# Operation names as stored in _sync_log.operation
OPERATION_INSERT: Final[str] = "insert"
OPERATION_UPDATE: Final[str] = "update"
OPERATION_DELETE: Final[str] = "delete"
OPERATION_TYPES: Final[frozenset[str]] = frozenset(
    {OPERATION_INSERT, OPERATION_UPDATE, OPERATION_DELETE}
)

# Batch enumeration limits
DEFAULT_BATCH_SIZE: Final[int] = 1000
MAX_BATCH_SIZE: Final[int] = 5000
DEFAULT_MAX_RETRY_PASSES: Final[int] = 3

# Replicas that have not pulled for this long no longer hold back purging
DEFAULT_STALE_CLIENT_AGE: Final[timedelta] = timedelta(days=90)

# SQLite PRAGMA settings for sync databases
# foreign_keys must be ON for deferred FK retry to observe violations
SQLITE_PRAGMAS: Final[dict[str, str]] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "foreign_keys": "ON",
    "busy_timeout": "5000",
}

# Prefix shared by every table owned by the sync system
SYNC_TABLE_PREFIX: Final[str] = "_sync_"

RESERVED_TABLE_NAMES: Final[frozenset[str]] = frozenset(
    {
        "_sync_state",
        "_sync_session",
        "_sync_log",
        "_sync_clients",
        "_sync_subscriptions",
        "_sync_mapping_state",
        "_sync_record_hashes",
    }
)

# Keys used in the _sync_state table
STATE_KEY_ORIGIN_ID: Final[str] = "origin_id"
STATE_KEY_LAST_SERVER_VERSION: Final[str] = "last_server_version"
STATE_KEY_LAST_PUSH_VERSION: Final[str] = "last_push_version"
STATE_KEY_PURGED_THROUGH: Final[str] = "purged_through_version"

# Timestamp format written by capture triggers: 2025-12-18T10:30:00.123Z
TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S.%fZ"


@dataclass(frozen=True)
class BatchConfig:
    """Tuning knobs for batch enumeration and application."""
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retry_passes: int = DEFAULT_MAX_RETRY_PASSES
