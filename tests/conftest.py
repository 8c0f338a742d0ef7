"""
conftest.py - pytest fixtures for tablesync tests.
"""

import os
import tempfile

import pytest

from tablesync import SyncEngine

TODOS_DDL = """
    CREATE TABLE todos (
        id INTEGER PRIMARY KEY,
        title TEXT NOT NULL,
        done INTEGER DEFAULT 0
    )
"""


def create_todos(engine: SyncEngine) -> None:
    """Create the todos table and start capturing it."""
    engine.connection.execute(TODOS_DDL)
    engine.enable_sync_for_table("todos")


def titles(engine: SyncEngine) -> dict:
    rows = engine.connection.execute("SELECT id, title FROM todos ORDER BY id").fetchall()
    return dict(rows)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def engine(temp_dir):
    """Create an initialized SyncEngine in a temp directory."""
    db_path = os.path.join(temp_dir, "test.db")
    engine = SyncEngine(db_path)
    engine.initialize()
    yield engine
    engine.close()


@pytest.fixture
def two_engines(temp_dir):
    """Create two initialized SyncEngines with a synced todos table."""
    engine_a = SyncEngine(os.path.join(temp_dir, "device_a.db"))
    engine_a.initialize()
    engine_b = SyncEngine(os.path.join(temp_dir, "device_b.db"))
    engine_b.initialize()
    for e in (engine_a, engine_b):
        create_todos(e)

    yield engine_a, engine_b

    engine_a.close()
    engine_b.close()


@pytest.fixture
def hub(temp_dir):
    """A hub database that replicas push to and pull from."""
    engine = SyncEngine(os.path.join(temp_dir, "hub.db"))
    engine.initialize()
    create_todos(engine)
    yield engine
    engine.close()
