"""
test_dialects.py - Tests for generated SQL and hashing helpers.
"""

import sqlite3

import pytest

from conftest import create_todos
from tablesync.db.dialects import POSTGRES, SQLITE, get_dialect, trigger_name
from tablesync.db.metadata import TableInfo
from tablesync.utils.hashing import canonical_json, compute_batch_hash, verify_hash

TODOS = TableInfo(name="todos", columns=("id", "title", "done"), primary_key="id")


class TestSQLiteDialect:
    """Tests for SQLite statement generation."""

    def test_trigger_statements(self):
        statements = SQLITE.create_trigger_statements(TODOS)
        assert len(statements) == 3
        insert = statements[0]
        assert 'CREATE TRIGGER "todos_sync_insert"' in insert
        assert "WHEN (SELECT sync_active FROM _sync_session) = 0" in insert
        assert "json_object('done', NEW.\"done\", 'id', NEW.\"id\", 'title', NEW.\"title\")" in insert
        assert "OLD.\"id\"" in statements[2]
        assert "NULL" in statements[2]

    def test_upsert_and_delete(self):
        sql = SQLITE.upsert_sql("todos", ["id", "title"], "id")
        assert sql == (
            'INSERT INTO "todos" ("id", "title") VALUES (?, ?) '
            'ON CONFLICT("id") DO UPDATE SET "title" = excluded."title"'
        )
        assert SQLITE.upsert_sql("tags", ["id"], "id").endswith("DO NOTHING")
        assert SQLITE.delete_sql("todos", "id") == 'DELETE FROM "todos" WHERE "id" = ?'

    def test_quote_escapes(self):
        assert SQLITE.quote('we"ird') == '"we""ird"'

    def test_generated_script_installs(self, engine):
        create_todos(engine)
        engine.disable_sync_for_table("todos")
        engine.connection.executescript(SQLITE.generate_trigger_sql(TODOS))
        assert engine.is_sync_enabled("todos")

    def test_foreign_key_detection(self):
        assert SQLITE.is_foreign_key_violation(sqlite3.IntegrityError("FOREIGN KEY constraint failed"))
        assert not SQLITE.is_foreign_key_violation(sqlite3.IntegrityError("UNIQUE constraint failed"))


class TestPostgresDialect:
    """Tests for PostgreSQL statement generation."""

    def test_trigger_functions(self):
        statements = POSTGRES.create_trigger_statements(TODOS)
        assert len(statements) == 6
        function, trigger = statements[0], statements[1]
        assert "CREATE OR REPLACE FUNCTION todos_sync_insert_fn()" in function
        assert "jsonb_build_object('id', NEW.\"id\")::text" in function
        assert "LANGUAGE plpgsql" in function
        assert "FOR EACH ROW EXECUTE FUNCTION todos_sync_insert_fn()" in trigger
        assert "RETURN OLD" in statements[4]

    def test_drop_statements(self):
        drops = POSTGRES.drop_trigger_statements("todos")
        assert 'DROP TRIGGER IF EXISTS todos_sync_update ON "todos"' in drops
        assert "DROP FUNCTION IF EXISTS todos_sync_delete_fn()" in drops

    def test_placeholders(self):
        assert POSTGRES.delete_sql("todos", "id").endswith("= %s")
        assert "VALUES (%s, %s)" in POSTGRES.upsert_sql("todos", ["id", "title"], "id")

    def test_foreign_key_by_sqlstate(self):
        class FakeError(Exception):
            pgcode = "23503"

        assert POSTGRES.is_foreign_key_violation(FakeError("insert or update violates"))


class TestDialectLookup:
    def test_lookup(self):
        assert get_dialect("SQLite") is SQLITE
        assert get_dialect("postgres") is POSTGRES
        with pytest.raises(ValueError):
            get_dialect("oracle")

    def test_trigger_name(self):
        assert trigger_name("todos", "delete") == "todos_sync_delete"


class TestHashing:
    """Tests for canonical JSON and content hashes."""

    def test_canonical_json(self):
        assert canonical_json({"b": 1, "a": "é"}) == '{"a":"é","b":1}'

    def test_batch_hash_depends_on_order(self, engine):
        create_todos(engine)
        engine.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a'), (2, 'b')")
        changes = engine.get_changes(0).changes
        assert compute_batch_hash(changes) != compute_batch_hash(reversed(changes))
        assert compute_batch_hash([]) == compute_batch_hash(())

    def test_database_hash_ignores_insert_order(self, two_engines):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a'), (2, 'b')")
        engine_b.connection.execute("INSERT INTO todos (id, title) VALUES (2, 'b'), (1, 'a')")
        assert engine_a.database_hash() == engine_b.database_hash()

        engine_b.connection.execute("UPDATE todos SET done = 1 WHERE id = 2")
        assert engine_a.database_hash() != engine_b.database_hash()

    def test_verify_hash(self):
        digest = "ab" * 32
        assert verify_hash(digest, digest.upper())
        assert not verify_hash(digest, "cd" * 32)
