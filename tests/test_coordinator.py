"""
test_coordinator.py - Tests for replica <-> hub synchronization.

Uses the in-process LocalTransport so that full pull/push rounds can
run without a network.
"""

import asyncio
import json
import os
import time

import pytest

from conftest import create_todos, titles
from tablesync import SyncCoordinator, SyncEngine
from tablesync.errors import FullResyncRequired, TransportError
from tablesync.mapping import load_mapping_config
from tablesync.scheduler import SyncScheduler, SyncStatus, backoff_delay
from tablesync.transport.local import LocalTransport


def sync(engine, hub):
    return asyncio.run(SyncCoordinator(engine, LocalTransport(hub)).sync())


class TestSyncRounds:
    """Tests for pull and push through a hub."""

    def test_change_reaches_other_replica(self, two_engines, hub):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'from A')")

        pushed = sync(engine_a, hub)
        pulled = sync(engine_b, hub)

        assert pushed.sent_count == 1
        assert pulled.received_count == 1
        assert pulled.applied_count == 1
        assert titles(engine_b) == {1: "from A"}
        assert titles(hub) == {1: "from A"}

    def test_watermarks_advance(self, two_engines, hub):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a'), (2, 'b')")
        sync(engine_a, hub)
        sync(engine_b, hub)

        assert engine_a.get_last_push_version() == 2
        assert engine_b.get_last_server_version() == hub.get_state().max_version
        assert hub.tracker.get(engine_b.origin_id).last_sync_version == 2

    def test_second_round_is_quiet(self, two_engines, hub):
        engine_a, _ = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a')")
        sync(engine_a, hub)

        again = sync(engine_a, hub)
        assert again.sent_count == 0
        assert again.applied_count == 0

    def test_own_changes_come_back_as_echoes(self, two_engines, hub):
        engine_a, _ = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a')")
        sync(engine_a, hub)

        result = sync(engine_a, hub)
        assert result.received_count == 1
        assert result.applied_count == 0
        assert engine_a.get_state().entry_count == 1

    def test_small_batches(self, two_engines, hub):
        engine_a, engine_b = two_engines
        for i in range(7):
            engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (?, ?)", (i, f"t{i}"))

        asyncio.run(SyncCoordinator(engine_a, LocalTransport(hub), batch_size=3).sync())
        result = asyncio.run(SyncCoordinator(engine_b, LocalTransport(hub), batch_size=3).sync())

        assert result.applied_count == 7
        assert len(titles(engine_b)) == 7

    def test_concurrent_edits_converge(self, two_engines, hub):
        """The later write wins on every replica."""
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'original')")
        sync(engine_a, hub)
        sync(engine_b, hub)

        engine_a.connection.execute("UPDATE todos SET title = 'from A' WHERE id = 1")
        time.sleep(0.01)
        engine_b.connection.execute("UPDATE todos SET title = 'from B' WHERE id = 1")

        sync(engine_a, hub)
        result_b = sync(engine_b, hub)
        sync(engine_a, hub)

        assert result_b.conflict_count == 1
        assert titles(engine_a) == titles(engine_b) == titles(hub) == {1: "from B"}
        assert engine_a.database_hash() == engine_b.database_hash() == hub.database_hash()

    def test_deletes_propagate(self, two_engines, hub):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a'), (2, 'b')")
        sync(engine_a, hub)
        sync(engine_b, hub)

        engine_b.connection.execute("DELETE FROM todos WHERE id = 1")
        sync(engine_b, hub)
        sync(engine_a, hub)

        assert titles(engine_a) == titles(engine_b) == {2: "b"}


TODOS_TO_TASKS = {
    "unmapped_table_behavior": "passthrough",
    "mappings": [{
        "id": "todos-to-tasks",
        "source_table": "todos",
        "target_table": "tasks",
        "direction": "push",
        "pk_mapping": {"source_column": "id", "target_column": "task_id"},
        "column_mappings": [{"source": "title", "target": "label"}],
        "filter": "done = 0",
    }],
}


class TestPushMapping:
    """Tests for mappings applied to outgoing changes."""

    @pytest.fixture
    def mapped_replica(self, temp_dir):
        engine = SyncEngine(
            os.path.join(temp_dir, "mapped.db"),
            mapping_config=load_mapping_config(json.dumps(TODOS_TO_TASKS)),
        )
        engine.initialize()
        create_todos(engine)
        yield engine
        engine.close()

    def test_push_writes_mapped_rows_to_hub(self, mapped_replica, hub):
        hub.connection.execute("CREATE TABLE tasks (task_id INTEGER PRIMARY KEY, label TEXT)")
        mapped_replica.connection.execute(
            "INSERT INTO todos (id, title, done) VALUES (1, 'open', 0), (2, 'closed', 1)"
        )

        result = sync(mapped_replica, hub)

        assert result.sent_count == 1
        assert hub.connection.execute("SELECT task_id, label FROM tasks").fetchall() == [(1, "open")]
        assert titles(hub) == {}
        assert mapped_replica.get_last_push_version() == 2
        assert sync(mapped_replica, hub).sent_count == 0

    def test_filtered_batch_still_advances_watermark(self, mapped_replica, hub):
        mapped_replica.connection.execute("INSERT INTO todos (id, title, done) VALUES (1, 'closed', 1)")

        result = sync(mapped_replica, hub)

        assert result.sent_count == 0
        assert mapped_replica.get_last_push_version() == 1
        assert hub.get_state().entry_count == 0

    def test_push_only_mapping_leaves_pulls_alone(self, mapped_replica, hub):
        hub.connection.execute("INSERT INTO todos (id, title) VALUES (3, 'from hub')")

        result = sync(mapped_replica, hub)

        assert result.applied_count == 1
        assert titles(mapped_replica) == {3: "from hub"}


class TestFullResync:
    """Tests for replicas that fall behind the purge point."""

    def test_new_replica_resyncs_from_snapshot(self, two_engines, hub):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a'), (2, 'b')")
        sync(engine_a, hub)
        hub.tombstones.purge(hub.get_state().max_version)

        result = sync(engine_b, hub)

        assert result.full_resync
        assert titles(engine_b) == {1: "a", 2: "b"}
        assert engine_b.get_last_server_version() == 2

    def test_resync_pushes_local_changes_first(self, two_engines, hub):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a')")
        sync(engine_a, hub)
        hub.tombstones.purge(1)
        engine_b.connection.execute("INSERT INTO todos (id, title) VALUES (5, 'offline work')")

        result = sync(engine_b, hub)

        assert result.full_resync
        assert titles(engine_b) == {1: "a", 5: "offline work"}
        assert titles(hub) == {1: "a", 5: "offline work"}

    def test_repeated_resync_is_an_error(self, engine, hub):
        create_todos(engine)

        class AlwaysPurged(LocalTransport):
            async def fetch_changes(self, from_version, batch_size):
                raise FullResyncRequired(from_version, from_version + 1)

        coordinator = SyncCoordinator(engine, AlwaysPurged(hub))
        with pytest.raises(FullResyncRequired):
            asyncio.run(coordinator.pull())


class TestScheduler:
    """Tests for the sync scheduler."""

    def test_backoff_grows_and_caps(self):
        assert backoff_delay(0) == 1.0
        assert backoff_delay(1) == 1.0
        assert backoff_delay(2) == 2.0
        assert backoff_delay(4) == 8.0
        assert backoff_delay(50) == 300.0

    def test_sync_now_reports_status(self, two_engines, hub):
        engine_a, _ = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'a')")
        seen = []
        scheduler = SyncScheduler(SyncCoordinator(engine_a, LocalTransport(hub)), on_status_change=seen.append)

        result = asyncio.run(scheduler.sync_now())

        assert result.sent_count == 1
        assert scheduler.status == SyncStatus.IDLE
        assert seen == [SyncStatus.SYNCING, SyncStatus.IDLE]
        assert scheduler.last_result is result

    def test_unreachable_peer_counts_failures(self, engine, hub):
        create_todos(engine)

        class Offline(LocalTransport):
            async def health(self):
                return False

        scheduler = SyncScheduler(SyncCoordinator(engine, Offline(hub)))
        for _ in range(2):
            with pytest.raises(TransportError):
                asyncio.run(scheduler.sync_now())

        assert scheduler.failures == 2
        assert scheduler.status == SyncStatus.ERROR
        assert scheduler.last_result.error

    def test_background_loop_stops(self, temp_dir, hub):
        with SyncEngine(os.path.join(temp_dir, "bg.db")) as replica:
            replica.initialize()
            create_todos(replica)
            replica.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'bg')")
            scheduler = SyncScheduler(SyncCoordinator(replica, LocalTransport(hub)), interval_seconds=0.05)

            scheduler.start(in_background=True)
            deadline = time.time() + 5
            while scheduler.last_result is None and time.time() < deadline:
                time.sleep(0.01)
            scheduler.stop()

            assert scheduler.status == SyncStatus.OFFLINE
            assert titles(hub) == {1: "bg"}
