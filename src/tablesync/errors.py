"""
errors.py - Domain-specific exceptions for tablesync.

All exceptions inherit from SyncError for unified handling.
Each exception type represents a distinct failure mode.
"""

from typing import Any


class SyncError(Exception):
    """Base exception for all tablesync errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class SchemaError(SyncError):
    """
    Raised when a table cannot take part in sync.

    This includes missing tables, missing or composite primary keys,
    sync tables that were never initialized, and trigger regeneration
    failures.
    """

    def __init__(
        self,
        message: str,
        table_name: str | None = None,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        context = {}
        if table_name is not None:
            context["table_name"] = table_name
        if expected is not None:
            context["expected"] = expected
        if actual is not None:
            context["actual"] = actual
        super().__init__(message, context=context)
        self.table_name = table_name
        self.expected = expected
        self.actual = actual


class DatabaseError(SyncError):
    """
    Raised when a database operation fails unexpectedly.

    This wraps driver errors with additional context about
    what operation was being attempted.
    """

    def __init__(
        self, message: str, operation: str | None = None, sql: str | None = None
    ) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        if sql is not None:
            # Truncate long SQL for readability
            context["sql"] = sql[:200] + "..." if len(sql) > 200 else sql
        super().__init__(message, context=context)
        self.operation = operation
        self.sql = sql


class ValidationError(SyncError):
    """
    Raised when input validation fails.

    This includes malformed pk_value or payload JSON, values outside
    the supported scalar types, and missing required columns.
    """

    def __init__(
        self, message: str, field: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if field is not None:
            context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.field = field
        self.value = value


class ForeignKeyDeferred(SyncError):
    """
    Internal signal: an entry referenced a parent row that is not there yet.

    The applier catches this and queues the entry for a retry pass.
    It never escapes a batch apply.
    """

    def __init__(self, version: int, table_name: str, detail: str) -> None:
        super().__init__(
            f"Foreign key not satisfied for {table_name} at version {version}",
            context={"version": version, "table_name": table_name, "detail": detail},
        )
        self.version = version
        self.table_name = table_name
        self.detail = detail


class RetryExhausted(SyncError):
    """
    Raised when deferred entries still fail after the bounded retry passes.

    The batch is rolled back as a whole. Retrying the identical batch
    after the missing parents arrive is expected to succeed.
    """

    def __init__(self, versions: list[int], passes: int) -> None:
        super().__init__(
            f"{len(versions)} deferred change(s) still failing after {passes} retry passes",
            context={"versions": versions, "passes": passes},
        )
        self.versions = versions
        self.passes = passes


class ConflictUnresolved(SyncError):
    """
    Raised when two origins wrote the same key and no resolver decided.
    """

    def __init__(self, table_name: str, pk_value: str, reason: str | None = None) -> None:
        context = {"table_name": table_name, "pk_value": pk_value}
        if reason is not None:
            context["reason"] = reason
        super().__init__("Conflict could not be resolved", context=context)
        self.table_name = table_name
        self.pk_value = pk_value
        self.reason = reason


class FullResyncRequired(SyncError):
    """
    Raised when a replica asks for changes that have already been purged.

    The replica must rebuild from a full snapshot instead of batching.
    """

    def __init__(self, from_version: int, purged_through: int) -> None:
        super().__init__(
            "Requested version is outside the retention window",
            context={"from_version": from_version, "purged_through": purged_through},
        )
        self.from_version = from_version
        self.purged_through = purged_through


class HashMismatch(SyncError):
    """Raised when a batch or database hash does not match the expected value."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            "Hash mismatch",
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class TransportError(SyncError):
    """Raised when a remote peer cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        context = {}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context)
        self.status_code = status_code
