"""
applier.py - Apply a batch of remote changes to the local database.

A batch is applied inside one transaction with capture suppressed,
so it either lands completely or not at all and never echoes back
into the local log. Entries that fail on a foreign key are retried
after the rest of the batch for a bounded number of passes.
"""

import dataclasses
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Sequence

from tablesync.config import DEFAULT_MAX_RETRY_PASSES
from tablesync.db.connection import execute_in_transaction, savepoint
from tablesync.db.dialects import SQLITE, Dialect
from tablesync.errors import (
    ConflictUnresolved,
    DatabaseError,
    ForeignKeyDeferred,
    RetryExhausted,
    SchemaError,
)
from tablesync.log.entries import ChangeLogEntry, Delete
from tablesync.log.repository import append_entry, get_latest_entry_for_key
from tablesync.mapping.config import MappingDefinition, SyncDirection
from tablesync.mapping.engine import MappedEntry, MappingEngine
from tablesync.mapping.tracking import MappingStateStore
from tablesync.resolution import ConflictContext, ConflictResolver
from tablesync.session import suppressed

logger = logging.getLogger("tablesync.apply")


@dataclass
class BatchApplyResult:
    """Counts for one applied batch."""
    applied_count: int = 0
    echo_count: int = 0
    conflict_count: int = 0
    conflicts_lost: int = 0
    unmapped_count: int = 0
    deferred_count: int = 0
    retry_passes: int = 0
    relayed_count: int = 0
    applied: list[ChangeLogEntry] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return self.echo_count + self.conflicts_lost + self.unmapped_count


@dataclass
class _PlannedWrite:
    """An entry that passed conflict and mapping checks, with its target writes."""
    entry: ChangeLogEntry
    targets: list[MappedEntry]
    mapping: MappingDefinition | None = None


class ChangeApplier:
    """
    Applies change log entries from other replicas.

    Args:
        conn: Connection to the target database
        origin_id: This replica's origin; matching entries are skipped
        resolver: Conflict resolver; None writes every incoming change
        mapper: Optional data mapper for cross-schema targets
        dialect: SQL dialect used to build upserts and deletes
        max_retry_passes: Bound on foreign-key retry passes
        record_relay: Append applied entries to the local log with
            their original origin (hub mode)
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        origin_id: str,
        resolver: ConflictResolver | None = None,
        mapper: MappingEngine | None = None,
        dialect: Dialect = SQLITE,
        max_retry_passes: int = DEFAULT_MAX_RETRY_PASSES,
        record_relay: bool = False,
    ) -> None:
        self._conn = conn
        self._origin_id = origin_id
        self._resolver = resolver
        self._mapper = mapper
        self._mapping_state = MappingStateStore(conn) if mapper is not None else None
        self._dialect = dialect
        self._max_retry_passes = max_retry_passes
        self._record_relay = record_relay

    def apply_batch(self, entries: Sequence[ChangeLogEntry]) -> BatchApplyResult:
        """
        Apply entries atomically.

        Raises:
            RetryExhausted: If deferred entries never succeed
            ConflictUnresolved: If the resolver declines a conflict
            SchemaError: If a target table or column does not exist
            DatabaseError: On any other database failure
        """
        if not entries:
            return BatchApplyResult()

        def do_apply(conn: sqlite3.Connection) -> BatchApplyResult:
            with suppressed(conn):
                return self._apply_all(entries)

        result = execute_in_transaction(self._conn, do_apply)
        logger.info(
            "Applied batch: %d applied, %d echo, %d conflicts (%d lost), %d deferred",
            result.applied_count, result.echo_count, result.conflict_count,
            result.conflicts_lost, result.deferred_count,
        )
        return result

    def _apply_all(self, entries: Sequence[ChangeLogEntry]) -> BatchApplyResult:
        result = BatchApplyResult()
        pending: list[_PlannedWrite] = []

        for entry in entries:
            if entry.origin == self._origin_id:
                result.echo_count += 1
                continue
            planned = self._plan(entry, result)
            if planned is None:
                continue
            try:
                self._write_planned(planned, result)
            except ForeignKeyDeferred as e:
                logger.debug("Deferring version %d: %s", entry.version, e.detail)
                pending.append(planned)

        # Deferred entries keep their first-pass conflict and mapping decisions
        result.deferred_count = len(pending)
        while pending and result.retry_passes < self._max_retry_passes:
            result.retry_passes += 1
            still_pending = []
            for planned in pending:
                try:
                    self._write_planned(planned, result)
                except ForeignKeyDeferred:
                    still_pending.append(planned)
            pending = still_pending

        if pending:
            raise RetryExhausted([planned.entry.version for planned in pending], result.retry_passes)

        if self._record_relay:
            for entry in result.applied:
                append_entry(self._conn, entry)
            result.relayed_count = len(result.applied)
        return result

    def _plan(self, entry: ChangeLogEntry, result: BatchApplyResult) -> _PlannedWrite | None:
        """Resolve conflicts and map an entry. None means it is skipped."""
        if self._resolver is not None:
            resolved = self._resolve_conflict(entry, result)
            if resolved is None:
                result.conflicts_lost += 1
                return None
            entry = resolved

        if self._mapper is None:
            return _PlannedWrite(entry, [MappedEntry.identity(entry)])

        mapping_result = self._mapper.map_entry(entry, SyncDirection.PULL)
        if not mapping_result.mapped:
            logger.debug("Skipping version %d: %s", entry.version, mapping_result.skip_reason)
            result.unmapped_count += 1
            return None
        mapping = mapping_result.mapping
        if mapping is not None and not self._mapping_state.should_sync(mapping, entry):
            result.unmapped_count += 1
            return None
        return _PlannedWrite(entry, mapping_result.mapped, mapping)

    def _write_planned(self, planned: _PlannedWrite, result: BatchApplyResult) -> None:
        # All targets of one entry land together or not at all
        with savepoint(self._conn):
            for target in planned.targets:
                self._write(planned.entry.version, target)
            if planned.mapping is not None:
                self._mapping_state.record_synced(planned.mapping, planned.entry)

        result.applied_count += 1
        result.applied.append(planned.entry)

    def _resolve_conflict(
        self, entry: ChangeLogEntry, result: BatchApplyResult
    ) -> ChangeLogEntry | None:
        """
        Check the local log for a competing write to the same row.

        Returns the entry to apply (possibly with a merged payload), or
        None when the local write wins.
        """
        local = get_latest_entry_for_key(self._conn, entry.table_name, entry.pk_text)
        if local is None or local.origin == entry.origin:
            return entry

        result.conflict_count += 1
        resolution = self._resolver.resolve(
            ConflictContext(
                table_name=entry.table_name,
                pk_value=entry.pk_value,
                local=local,
                remote=entry,
            )
        )
        if not resolution.resolved:
            raise ConflictUnresolved(entry.table_name, entry.pk_text, resolution.reason)
        logger.info("Conflict on %s %s: %s", entry.table_name, entry.pk_text, resolution.reason)
        if not resolution.apply_remote:
            return None
        if resolution.merged_payload is not None and not isinstance(entry.operation, Delete):
            operation = type(entry.operation)(dict(resolution.merged_payload))
            return dataclasses.replace(entry, operation=operation)
        return entry

    def _write(self, version: int, target: MappedEntry) -> None:
        if target.payload is None:
            sql = self._dialect.delete_sql(target.table_name, target.pk_column)
            params: list = [target.pk]
        else:
            row = dict(target.payload)
            row.setdefault(target.pk_column, target.pk)
            columns = list(row)
            sql = self._dialect.upsert_sql(target.table_name, columns, target.pk_column)
            params = [row[c] for c in columns]

        try:
            self._conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            if self._dialect.is_foreign_key_violation(e):
                raise ForeignKeyDeferred(version, target.table_name, str(e)) from e
            raise DatabaseError(
                f"Constraint violation applying version {version}: {e}",
                operation="apply",
                sql=sql,
            ) from e
        except sqlite3.OperationalError as e:
            if "no such" in str(e) or "has no column" in str(e):
                raise SchemaError(
                    f"Cannot apply version {version}: {e}",
                    table_name=target.table_name,
                ) from e
            raise DatabaseError(
                f"Failed to apply version {version}: {e}",
                operation="apply",
                sql=sql,
            ) from e
