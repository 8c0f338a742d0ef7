"""
test_cli.py - Tests for the tablesync command line.
"""

import os
import sqlite3

import pytest
from typer.testing import CliRunner

from tablesync import SyncEngine
from tablesync.cli.main import app

runner = CliRunner()


@pytest.fixture
def db_path(temp_dir):
    path = os.path.join(temp_dir, "cli.db")
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE todos (id INTEGER PRIMARY KEY, title TEXT)")
    conn.commit()
    conn.close()
    return path


class TestCLI:
    def test_init_enables_tables(self, db_path):
        result = runner.invoke(app, ["init", db_path, "--table", "todos"])

        assert result.exit_code == 0
        assert "Enabled sync for table: todos" in result.output
        with SyncEngine(db_path) as engine:
            assert engine.is_sync_enabled("todos")

    def test_init_all_tables(self, db_path):
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)")
        conn.commit()
        conn.close()

        result = runner.invoke(app, ["init", db_path, "--all"])

        assert result.exit_code == 0
        with SyncEngine(db_path) as engine:
            assert engine.is_sync_enabled("todos")
            assert engine.is_sync_enabled("notes")

    def test_init_reports_bad_table(self, db_path):
        result = runner.invoke(app, ["init", db_path, "--table", "missing"])
        assert result.exit_code == 1

    def test_disable(self, db_path):
        runner.invoke(app, ["init", db_path, "--table", "todos"])
        result = runner.invoke(app, ["disable", db_path, "todos"])

        assert result.exit_code == 0
        with SyncEngine(db_path) as engine:
            assert not engine.is_sync_enabled("todos")

    def test_triggers_prints_ddl(self, db_path):
        runner.invoke(app, ["init", db_path])
        result = runner.invoke(app, ["triggers", db_path, "todos", "--dialect", "postgres"])

        assert result.exit_code == 0
        assert "CREATE OR REPLACE FUNCTION todos_sync_insert_fn()" in result.output

    def test_triggers_unknown_dialect(self, db_path):
        runner.invoke(app, ["init", db_path])
        result = runner.invoke(app, ["triggers", db_path, "todos", "--dialect", "oracle"])
        assert result.exit_code == 1

    def test_status(self, db_path):
        runner.invoke(app, ["init", db_path, "--table", "todos"])
        result = runner.invoke(app, ["status", db_path])

        assert result.exit_code == 0
        assert "Sync Status" in result.output
        assert "todos" in result.output

    def test_status_uninitialized(self, db_path):
        result = runner.invoke(app, ["status", db_path])
        assert result.exit_code == 1

    def test_hash_matches_engine(self, db_path):
        runner.invoke(app, ["init", db_path, "--table", "todos"])
        with SyncEngine(db_path) as engine:
            engine.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a')")
            expected = engine.database_hash()

        result = runner.invoke(app, ["hash", db_path])
        assert result.exit_code == 0
        assert result.stdout.strip() == expected

    def test_purge_explicit_version(self, db_path):
        runner.invoke(app, ["init", db_path, "--table", "todos"])
        with SyncEngine(db_path) as engine:
            engine.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a'), (2, 'b')")

        result = runner.invoke(app, ["purge", db_path, "--version", "1"])

        assert result.exit_code == 0
        assert "Purged 1 entries" in result.output

    def test_sync_rejects_python_only_strategy(self, db_path):
        result = runner.invoke(app, ["sync", db_path, "http://localhost:1", "--strategy", "custom"])
        assert result.exit_code == 1
