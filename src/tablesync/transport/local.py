"""
local.py - In-process transport.

Connects a replica directly to a hub SyncEngine in the same process.
Used for embedded topologies and for tests.
"""

from tablesync.clients import ReplicaWatermark
from tablesync.engine import SyncEngine
from tablesync.protocol.batch import SyncBatch
from tablesync.retention import Snapshot
from tablesync.transport.base import TransportAdapter


class LocalTransport(TransportAdapter):
    """Talks to a hub engine without a network hop."""

    def __init__(self, hub: SyncEngine):
        self._hub = hub

    @property
    def name(self) -> str:
        return "local"

    async def health(self) -> bool:
        return True

    async def fetch_changes(self, from_version: int, batch_size: int) -> SyncBatch:
        return self._hub.get_changes(from_version, batch_size)

    async def push_changes(self, batch: SyncBatch, origin_id: str) -> int:
        result = self._hub.apply_changes(batch.changes, record_relay=True)
        return result.applied_count

    async def register_client(self, origin_id: str, last_sync_version: int) -> ReplicaWatermark:
        return self._hub.register_client(origin_id, last_sync_version)

    async def fetch_snapshot(self) -> Snapshot:
        return self._hub.create_snapshot()

    async def close(self) -> None:
        pass
