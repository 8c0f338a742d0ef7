"""
test_transport.py - Tests for the HTTP hub server and HTTP transport.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import titles
from tablesync import SyncCoordinator
from tablesync.errors import FullResyncRequired, TransportError
from tablesync.log.repository import count_entries
from tablesync.protocol.batch import batch_from_wire, batch_to_wire
from tablesync.transport.http_transport import HTTPTransport
from tablesync.transport.server import app, get_engine


def seed(engine, count):
    for i in range(1, count + 1):
        engine.connection.execute("INSERT INTO todos (id, title) VALUES (?, ?)", (i, f"todo {i}"))


@pytest.fixture
def client(hub):
    app.dependency_overrides[get_engine] = lambda: hub
    yield TestClient(app)
    app.dependency_overrides.clear()


def push_body(engine):
    wire = batch_to_wire(engine.get_changes(0))
    return {"changes": wire["changes"], "originId": engine.origin_id, "batchHash": wire["batch_hash"]}


class TestServer:
    """Tests for the FastAPI endpoints."""

    def test_health(self, client):
        response = client.get("/sync/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_pull_batches(self, client, hub):
        seed(hub, 3)
        response = client.get("/sync/changes", params={"fromVersion": 0, "batchSize": 2})
        assert response.status_code == 200

        batch = batch_from_wire(response.json())
        assert [e.version for e in batch.changes] == [1, 2]
        assert batch.has_more

    def test_pull_behind_purge_point(self, client, hub):
        seed(hub, 3)
        hub.tombstones.purge(2)
        response = client.get("/sync/changes", params={"fromVersion": 1})

        assert response.status_code == 410
        body = response.json()
        assert body["error"] == "full_resync_required"
        assert body["purged_through"] == 2

    def test_negative_version_rejected(self, client):
        response = client.get("/sync/changes", params={"fromVersion": -1})
        assert response.status_code == 422

    def test_push_is_applied_and_relayed(self, client, hub, two_engines):
        engine_a, _ = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'pushed')")

        response = client.post("/sync/changes", json=push_body(engine_a))

        assert response.status_code == 200
        body = response.json()
        assert body["accepted_count"] == 1
        assert body["relayed_count"] == 1
        assert titles(hub) == {1: "pushed"}
        assert count_entries(hub.connection) == 1

    def test_push_with_wrong_hash(self, client, hub, two_engines):
        engine_a, _ = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'pushed')")
        body = push_body(engine_a)
        body["batchHash"] = "0" * 64

        response = client.post("/sync/changes", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "hash_mismatch"
        assert titles(hub) == {}

    def test_push_malformed_change(self, client):
        response = client.post(
            "/sync/changes",
            json={"changes": [{"version": 1, "table_name": "todos"}], "originId": "r"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_push_to_unknown_table(self, client):
        change = {
            "version": 1,
            "table_name": "ghost",
            "pk_value": {"id": 1},
            "operation": "insert",
            "payload": {"id": 1},
            "origin": "r",
            "timestamp": "2025-01-01T00:00:00.000Z",
        }
        response = client.post("/sync/changes", json={"changes": [change], "originId": "r"})
        assert response.status_code == 422
        assert response.json()["error"] == "schema_error"

    def test_register_and_remove_client(self, client, hub):
        response = client.post("/sync/clients", json={"originId": "replica-1", "lastSyncVersion": 4})
        assert response.status_code == 200
        assert response.json()["last_sync_version"] == 4
        assert hub.tracker.get("replica-1").last_sync_version == 4

        assert client.delete("/sync/clients/replica-1").status_code == 200
        assert client.delete("/sync/clients/replica-1").status_code == 404

    def test_register_rejects_negative_version(self, client):
        response = client.post("/sync/clients", json={"originId": "replica-1", "lastSyncVersion": -1})
        assert response.status_code == 422

    def test_state(self, client, hub):
        seed(hub, 2)
        hub.register_client("replica-1", 1)
        body = client.get("/sync/state").json()

        assert body["origin_id"] == hub.origin_id
        assert body["max_version"] == 2
        assert body["tracked_tables"] == ["todos"]
        assert [c["origin_id"] for c in body["clients"]] == ["replica-1"]

    def test_snapshot_and_hash(self, client, hub):
        seed(hub, 2)
        snapshot = client.get("/sync/snapshot").json()
        assert snapshot["version"] == 2
        assert len(snapshot["tables"]["todos"]) == 2

        digest = client.get("/sync/hash", params={"tables": "todos"}).json()
        assert digest["hash"] == hub.database_hash(["todos"])
        assert client.get("/sync/hash").json()["hash"] == digest["hash"]

    def test_subscriptions(self, client):
        response = client.post(
            "/sync/subscriptions",
            json={"originId": "r", "type": "query", "tableName": "todos", "filter": "done = 1"},
        )
        assert response.status_code == 200
        subscription_id = response.json()["subscription_id"]

        assert client.delete(f"/sync/subscriptions/{subscription_id}").status_code == 200
        assert client.delete(f"/sync/subscriptions/{subscription_id}").status_code == 404

    def test_invalid_subscription(self, client):
        response = client.post(
            "/sync/subscriptions",
            json={"originId": "r", "type": "everything", "tableName": "todos"},
        )
        assert response.status_code == 400

    def test_purge(self, client, hub):
        seed(hub, 4)
        hub.register_client("replica-1", 3)

        body = client.post("/sync/retention/purge", json={}).json()
        assert body["purged_through"] == 3
        assert body["entries_removed"] == 3

        body = client.post("/sync/retention/purge", json={"version": 4}).json()
        assert body["purged_through"] == 4

    def test_metrics(self, client, two_engines):
        engine_a, _ = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'counted')")
        client.post("/sync/changes", json=push_body(engine_a))

        response = client.get("/sync/metrics")
        assert response.status_code == 200
        assert "tablesync_batches_applied_total" in response.text


def run_with_transport(hub, origin_id, scenario):
    """Run an async scenario against the ASGI app without a network."""
    app.dependency_overrides[get_engine] = lambda: hub

    async def main():
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        ) as http_client:
            transport = HTTPTransport("http://testserver", origin_id, client=http_client)
            return await scenario(transport)

    try:
        return asyncio.run(main())
    finally:
        app.dependency_overrides.clear()


class TestHTTPTransport:
    """Tests for the client side of the HTTP protocol."""

    def test_full_round_trip(self, two_engines, hub):
        engine_a, engine_b = two_engines
        engine_a.connection.execute("INSERT INTO todos (id, title) VALUES (1, 'over http')")

        run_with_transport(hub, engine_a.origin_id, lambda t: SyncCoordinator(engine_a, t).sync())
        result = run_with_transport(hub, engine_b.origin_id, lambda t: SyncCoordinator(engine_b, t).sync())

        assert result.applied_count == 1
        assert titles(engine_b) == {1: "over http"}
        assert hub.tracker.get(engine_b.origin_id).last_sync_version == 1

    def test_health(self, hub):
        assert run_with_transport(hub, "r", lambda t: t.health())

    def test_purged_pull_raises_full_resync(self, hub):
        seed(hub, 3)
        hub.tombstones.purge(3)

        with pytest.raises(FullResyncRequired) as exc_info:
            run_with_transport(hub, "r", lambda t: t.fetch_changes(0, 10))
        assert exc_info.value.purged_through == 3

    def test_resync_over_http(self, two_engines, hub):
        _, engine_b = two_engines
        seed(hub, 3)
        hub.tombstones.purge(3)

        result = run_with_transport(hub, engine_b.origin_id, lambda t: SyncCoordinator(engine_b, t).sync())

        assert result.full_resync
        assert len(titles(engine_b)) == 3

    def test_error_status_becomes_transport_error(self, two_engines, hub):
        engine_a, _ = two_engines
        engine_a.connection.execute("CREATE TABLE extra (id INTEGER PRIMARY KEY)")
        engine_a.enable_sync_for_table("extra")
        engine_a.connection.execute("INSERT INTO extra (id) VALUES (1)")

        with pytest.raises(TransportError) as exc_info:
            run_with_transport(hub, engine_a.origin_id, lambda t: t.push_changes(engine_a.get_changes(0), engine_a.origin_id))
        assert exc_info.value.status_code == 422

    def test_unreachable_server(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def main():
            async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http_client:
                transport = HTTPTransport("http://hub.invalid", "r", client=http_client)
                healthy = await transport.health()
                with pytest.raises(TransportError):
                    await transport.fetch_changes(0, 10)
                return healthy

        assert asyncio.run(main()) is False
