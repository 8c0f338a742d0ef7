"""
schema.py - SQL schema definitions for sync tables.

These tables are created by initialize_sync_tables() and must
not be modified by applications directly. Column sets are shared
with every other replica implementation and must stay stable.
"""

from typing import Final

SYNC_STATE_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Single row. 1 while a remote batch is being applied.
SYNC_SESSION_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_session (
    sync_active INTEGER DEFAULT 0
);
"""

SYNC_LOG_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_log (
    version INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    pk_value TEXT NOT NULL,
    operation TEXT NOT NULL CHECK (operation IN ('insert', 'update', 'delete')),
    payload TEXT,
    origin TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_table ON _sync_log(table_name, version);
"""

SYNC_CLIENTS_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_clients (
    origin_id TEXT PRIMARY KEY,
    last_sync_version INTEGER NOT NULL DEFAULT 0,
    last_sync_timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

SYNC_SUBSCRIPTIONS_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_subscriptions (
    subscription_id TEXT PRIMARY KEY,
    origin_id TEXT NOT NULL,
    subscription_type TEXT NOT NULL CHECK (subscription_type IN ('record', 'table', 'query')),
    table_name TEXT NOT NULL,
    filter TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_subscriptions_table ON _sync_subscriptions(table_name);
"""

SYNC_MAPPING_STATE_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_mapping_state (
    mapping_id TEXT PRIMARY KEY,
    last_synced_version INTEGER NOT NULL DEFAULT 0,
    last_sync_timestamp TEXT,
    records_synced INTEGER NOT NULL DEFAULT 0
);
"""

SYNC_RECORD_HASHES_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS _sync_record_hashes (
    mapping_id TEXT NOT NULL,
    source_pk TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    synced_at TEXT NOT NULL,
    PRIMARY KEY (mapping_id, source_pk)
);
"""

ALL_SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    SYNC_STATE_SCHEMA,
    SYNC_SESSION_SCHEMA,
    SYNC_LOG_SCHEMA,
    SYNC_CLIENTS_SCHEMA,
    SYNC_SUBSCRIPTIONS_SCHEMA,
    SYNC_MAPPING_STATE_SCHEMA,
    SYNC_RECORD_HASHES_SCHEMA,
)
