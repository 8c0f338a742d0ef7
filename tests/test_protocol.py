"""
test_protocol.py - Tests for batch enumeration and the wire format.
"""

import pytest

from conftest import create_todos
from tablesync.config import MAX_BATCH_SIZE
from tablesync.db.migrations import set_purged_through
from tablesync.errors import FullResyncRequired, HashMismatch, ValidationError
from tablesync.log.entries import ChangeLogEntry, Delete, Insert, entry_from_wire, entry_to_wire
from tablesync.protocol.batch import (
    batch_from_wire,
    batch_to_wire,
    clamp_batch_size,
    fetch_batch,
    iter_batches,
    verify_batch,
)


def seed(engine, count):
    create_todos(engine)
    for i in range(1, count + 1):
        engine.connection.execute("INSERT INTO todos (id, title) VALUES (?, ?)", (i, f"todo {i}"))


class TestEnumeration:
    """Tests for pulling batches from the change log."""

    def test_batches_page_through_log(self, engine):
        seed(engine, 5)
        first = engine.get_changes(0, batch_size=2)
        assert [e.version for e in first.changes] == [1, 2]
        assert first.has_more
        assert first.to_version == 2

        second = engine.get_changes(first.to_version, batch_size=2)
        assert [e.version for e in second.changes] == [3, 4]
        third = engine.get_changes(second.to_version, batch_size=2)
        assert [e.version for e in third.changes] == [5]
        assert not third.has_more

    def test_exact_fit_has_no_more(self, engine):
        seed(engine, 3)
        batch = engine.get_changes(0, batch_size=3)
        assert len(batch) == 3
        assert not batch.has_more

    def test_empty_batch_keeps_watermark(self, engine):
        seed(engine, 2)
        batch = engine.get_changes(2)
        assert batch.is_empty
        assert batch.to_version == 2
        assert not batch.has_more

    def test_origin_filter(self, engine):
        seed(engine, 2)
        assert len(engine.get_changes(0, origin=engine.origin_id)) == 2
        assert engine.get_changes(0, origin="someone-else").is_empty

    def test_negative_watermark_rejected(self, engine):
        seed(engine, 1)
        with pytest.raises(ValidationError):
            engine.get_changes(-1)

    def test_purged_watermark_requires_resync(self, engine):
        seed(engine, 4)
        set_purged_through(engine.connection, 2)
        with pytest.raises(FullResyncRequired) as exc_info:
            engine.get_changes(1)
        assert exc_info.value.purged_through == 2
        assert [e.version for e in engine.get_changes(2).changes] == [3, 4]

    def test_local_changes_ignore_retention(self, engine):
        seed(engine, 3)
        set_purged_through(engine.connection, 3)
        assert len(engine.get_local_changes(0)) == 3

    def test_iter_batches(self, engine):
        seed(engine, 7)
        batches = list(iter_batches(engine.connection, 0, batch_size=3))
        assert [len(b) for b in batches] == [3, 3, 1]

    def test_batch_size_is_clamped(self):
        assert clamp_batch_size(None) > 0
        assert clamp_batch_size(0) == 1
        assert clamp_batch_size(MAX_BATCH_SIZE * 10) == MAX_BATCH_SIZE

    def test_batch_hash_matches_contents(self, engine):
        seed(engine, 3)
        batch = fetch_batch(engine.connection, 0, 10)
        assert verify_batch(batch)
        assert len(batch.batch_hash) == 64


class TestWireFormat:
    """Tests for decoding batches received from a peer."""

    def test_wire_batch_decodes(self, engine):
        seed(engine, 3)
        batch = engine.get_changes(0)
        decoded = batch_from_wire(batch_to_wire(batch))
        assert decoded == batch

    def test_tampered_batch_rejected(self, engine):
        seed(engine, 2)
        wire = batch_to_wire(engine.get_changes(0))
        wire["changes"][0]["payload"]["title"] = "tampered"
        with pytest.raises(HashMismatch):
            batch_from_wire(wire)

    def test_out_of_order_versions_rejected(self, engine):
        seed(engine, 2)
        wire = batch_to_wire(engine.get_changes(0))
        wire["changes"].reverse()
        with pytest.raises(ValidationError):
            batch_from_wire(wire, verify=False)

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError):
            batch_from_wire({"changes": [], "from_version": 0})

    def test_entry_accepts_json_text(self):
        entry = entry_from_wire({
            "version": 4,
            "table_name": "todos",
            "pk_value": '{"id": 1}',
            "operation": "insert",
            "payload": '{"id": 1, "title": "a"}',
            "origin": "o-1",
            "timestamp": "2025-12-18T10:30:00.123Z",
        })
        assert entry.pk_value == {"id": 1}
        assert isinstance(entry.operation, Insert)
        assert entry_to_wire(entry)["payload"] == {"id": 1, "title": "a"}

    def test_entry_rejects_bad_payloads(self):
        base = {
            "version": 1,
            "table_name": "todos",
            "pk_value": {"id": 1},
            "origin": "o-1",
            "timestamp": "2025-12-18T10:30:00.123Z",
        }
        with pytest.raises(ValidationError):
            entry_from_wire({**base, "operation": "delete", "payload": {"id": 1}})
        with pytest.raises(ValidationError):
            entry_from_wire({**base, "operation": "update", "payload": None})
        with pytest.raises(ValidationError):
            entry_from_wire({**base, "operation": "upsert", "payload": {"id": 1}})
        with pytest.raises(ValidationError):
            entry_from_wire({**base, "operation": "insert", "payload": {"id": {"nested": 1}}})
        with pytest.raises(ValidationError):
            entry_from_wire({**base, "operation": "insert", "payload": "not json"})

    def test_pk_value_must_be_single_column(self):
        with pytest.raises(ValidationError):
            ChangeLogEntry(1, "todos", {"a": 1, "b": 2}, Delete(), "o", "2025-12-18T10:30:00.123Z")
