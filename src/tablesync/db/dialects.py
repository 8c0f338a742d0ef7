"""
dialects.py - Per-database SQL strategies.

Each dialect turns TableInfo into the DDL and DML the sync engine
needs: capture triggers, upserts and deletes keyed by the primary
key, and recognition of foreign-key violations. Capture and apply
logic only talk to the Dialect interface, so adding a database
means adding one class here.
"""

from abc import ABC, abstractmethod
from typing import Final

from tablesync.db.metadata import TableInfo

TRIGGER_OPERATIONS: Final[tuple[str, ...]] = ("insert", "update", "delete")


def trigger_name(table_name: str, operation: str) -> str:
    return f"{table_name}_sync_{operation}"


class Dialect(ABC):
    """SQL generation strategy for one database product."""

    name: str = ""
    placeholder: str = "?"

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    @abstractmethod
    def create_trigger_statements(self, table: TableInfo) -> list[str]:
        """Statements that install the insert, update and delete capture triggers."""

    @abstractmethod
    def drop_trigger_statements(self, table_name: str) -> list[str]:
        """Statements that remove the capture triggers, if present."""

    def upsert_sql(self, table_name: str, columns: list[str], primary_key: str) -> str:
        """INSERT ... ON CONFLICT(pk) DO UPDATE for the given column list."""
        quoted = [self.quote(c) for c in columns]
        params = ", ".join(self.placeholder for _ in columns)
        updates = [f"{q} = excluded.{q}" for c, q in zip(columns, quoted) if c != primary_key]
        sql = (
            f"INSERT INTO {self.quote(table_name)} ({', '.join(quoted)}) "
            f"VALUES ({params}) ON CONFLICT({self.quote(primary_key)})"
        )
        if updates:
            return f"{sql} DO UPDATE SET {', '.join(updates)}"
        return f"{sql} DO NOTHING"

    def delete_sql(self, table_name: str, primary_key: str) -> str:
        return (
            f"DELETE FROM {self.quote(table_name)} "
            f"WHERE {self.quote(primary_key)} = {self.placeholder}"
        )

    def is_foreign_key_violation(self, error: Exception) -> bool:
        return "FOREIGN KEY" in str(error).upper()

    def generate_trigger_sql(self, table: TableInfo) -> str:
        """Full DDL text (drop then create) for one table."""
        statements = self.drop_trigger_statements(table.name) + self.create_trigger_statements(table)
        return ";\n\n".join(s.strip().rstrip(";") for s in statements) + ";\n"


_SQLITE_TRIGGER_TEMPLATE: Final[str] = """
CREATE TRIGGER {trigger}
AFTER {event} ON {table}
WHEN (SELECT sync_active FROM _sync_session) = 0
BEGIN
    INSERT INTO _sync_log (table_name, pk_value, operation, payload, origin, timestamp)
    VALUES (
        '{table_name}',
        json_object('{pk}', {row}.{quoted_pk}),
        '{operation}',
        {payload},
        (SELECT value FROM _sync_state WHERE key = 'origin_id'),
        strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
    );
END
"""


class SQLiteDialect(Dialect):
    """SQLite triggers built on json_object()."""

    name = "sqlite"
    placeholder = "?"

    def create_trigger_statements(self, table: TableInfo) -> list[str]:
        statements = []
        for operation in TRIGGER_OPERATIONS:
            row = "OLD" if operation == "delete" else "NEW"
            if operation == "delete":
                payload = "NULL"
            else:
                # Sorted keys keep the stored payload in canonical JSON form
                pairs = ", ".join(f"'{c}', NEW.{self.quote(c)}" for c in sorted(table.columns))
                payload = f"json_object({pairs})"
            statements.append(
                _SQLITE_TRIGGER_TEMPLATE.format(
                    trigger=self.quote(trigger_name(table.name, operation)),
                    event=operation.upper(),
                    table=self.quote(table.name),
                    table_name=table.name,
                    pk=table.primary_key,
                    row=row,
                    quoted_pk=self.quote(table.primary_key),
                    operation=operation,
                    payload=payload,
                ).strip()
            )
        return statements

    def drop_trigger_statements(self, table_name: str) -> list[str]:
        return [
            f"DROP TRIGGER IF EXISTS {self.quote(trigger_name(table_name, op))}"
            for op in TRIGGER_OPERATIONS
        ]


_POSTGRES_FUNCTION_TEMPLATE: Final[str] = """
CREATE OR REPLACE FUNCTION {prefix}_sync_{operation}_fn() RETURNS TRIGGER AS $$
BEGIN
    IF (SELECT sync_active FROM _sync_session LIMIT 1) = 0 THEN
        INSERT INTO _sync_log (table_name, pk_value, operation, payload, origin, timestamp)
        VALUES (
            '{table_name}',
            jsonb_build_object('{pk}', {row}.{quoted_pk})::text,
            '{operation}',
            {payload},
            (SELECT value FROM _sync_state WHERE key = 'origin_id'),
            to_char(now() AT TIME ZONE 'UTC', 'YYYY-MM-DD"T"HH24:MI:SS.MS"Z"')
        );
    END IF;
    RETURN {row};
END;
$$ LANGUAGE plpgsql
"""

_POSTGRES_TRIGGER_TEMPLATE: Final[str] = """
CREATE TRIGGER {prefix}_sync_{operation}
AFTER {event} ON {table}
FOR EACH ROW EXECUTE FUNCTION {prefix}_sync_{operation}_fn()
"""


class PostgresDialect(Dialect):
    """PostgreSQL triggers backed by plpgsql functions and jsonb_build_object()."""

    name = "postgres"
    placeholder = "%s"

    def create_trigger_statements(self, table: TableInfo) -> list[str]:
        prefix = table.name.lower()
        statements = []
        for operation in TRIGGER_OPERATIONS:
            row = "OLD" if operation == "delete" else "NEW"
            if operation == "delete":
                payload = "NULL"
            else:
                pairs = ", ".join(f"'{c}', NEW.{self.quote(c)}" for c in table.columns)
                payload = f"jsonb_build_object({pairs})::text"
            statements.append(
                _POSTGRES_FUNCTION_TEMPLATE.format(
                    prefix=prefix,
                    operation=operation,
                    table_name=table.name,
                    pk=table.primary_key,
                    row=row,
                    quoted_pk=self.quote(table.primary_key),
                    payload=payload,
                ).strip()
            )
            statements.append(
                _POSTGRES_TRIGGER_TEMPLATE.format(
                    prefix=prefix,
                    operation=operation,
                    event=operation.upper(),
                    table=self.quote(table.name),
                ).strip()
            )
        return statements

    def drop_trigger_statements(self, table_name: str) -> list[str]:
        prefix = table_name.lower()
        table = self.quote(table_name)
        drops = [
            f"DROP TRIGGER IF EXISTS {prefix}_sync_{op} ON {table}"
            for op in TRIGGER_OPERATIONS
        ]
        drops += [
            f"DROP FUNCTION IF EXISTS {prefix}_sync_{op}_fn()"
            for op in TRIGGER_OPERATIONS
        ]
        return drops

    def is_foreign_key_violation(self, error: Exception) -> bool:
        # SQLSTATE 23503 foreign_key_violation
        if getattr(error, "sqlstate", None) == "23503" or getattr(error, "pgcode", None) == "23503":
            return True
        return "foreign key" in str(error).lower()


SQLITE: Final[Dialect] = SQLiteDialect()
POSTGRES: Final[Dialect] = PostgresDialect()

_DIALECTS: Final[dict[str, Dialect]] = {SQLITE.name: SQLITE, POSTGRES.name: POSTGRES}


def get_dialect(name: str) -> Dialect:
    try:
        return _DIALECTS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown dialect: {name}") from None
