"""
coordinator.py - Pull and push loops between a replica and its hub.

Pull: fetch batches above last_server_version, apply each one and
advance the watermark, then report the watermark to the hub.
Push: send this replica's own entries above last_push_version, after
any push-direction mappings.

A crash between applying a batch and storing the watermark is safe:
the batch is fetched again and re-applied, which is idempotent.
"""

import asyncio
import logging
import time
from typing import Any, Callable

from tablesync.engine import SyncEngine
from tablesync.errors import FullResyncRequired
from tablesync.metrics import SyncLogger, sync_latency_seconds
from tablesync.transport.base import SyncResult, TransportAdapter

logger = logging.getLogger("tablesync.coordinator")


class SyncCoordinator:
    """
    Drives one replica's exchange with a hub.

    Args:
        engine: Local replica engine
        transport: Connection to the hub
        batch_size: Batch size for both directions; engine default if None
    """

    def __init__(self, engine: SyncEngine, transport: TransportAdapter, batch_size: int | None = None):
        self.engine = engine
        self.transport = transport
        self.batch_size = batch_size or engine.batch_config.batch_size
        self._events = SyncLogger("tablesync.coordinator")

    async def pull(self) -> SyncResult:
        """
        Apply every remote batch after the stored watermark.

        Falls back to a snapshot resync when the hub has purged the
        entries this replica still needs.
        """
        result = SyncResult()
        while True:
            from_version = await self._run(self.engine.get_last_server_version)
            try:
                batch = await self.transport.fetch_changes(from_version, self.batch_size)
            except FullResyncRequired as e:
                if result.full_resync:
                    raise
                logger.warning(f"Watermark {from_version} is behind purge point {e.purged_through}")
                result = result.merge(await self.resync())
                continue

            if batch.is_empty:
                break

            applied = await self._run(self.engine.apply_changes, batch.changes)
            await self._run(self.engine.set_last_server_version, batch.to_version)
            result.received_count += len(batch)
            result.applied_count += applied.applied_count
            result.conflict_count += applied.conflict_count

            if not batch.has_more:
                break

        version = await self._run(self.engine.get_last_server_version)
        await self.transport.register_client(self.engine.origin_id, version)
        self._events.pull_completed(self.engine.origin_id, result.received_count, result.applied_count, version)
        return result

    async def push(self) -> SyncResult:
        """Send this replica's own changes that the hub has not seen."""
        result = SyncResult()
        origin = self.engine.origin_id
        while True:
            from_version = await self._run(self.engine.get_last_push_version)
            batch = await self._run(self.engine.get_local_changes, from_version, self.batch_size)
            if batch.is_empty:
                break

            outgoing = await self._run(self.engine.map_outgoing, batch)
            accepted = 0
            if not outgoing.is_empty:
                accepted = await self.transport.push_changes(outgoing, origin)
            await self._run(self.engine.set_last_push_version, batch.to_version)
            result.sent_count += len(outgoing)
            logger.debug(f"Pushed {len(outgoing)} of {len(batch)} changes, hub applied {accepted}")

            if not batch.has_more:
                break

        if result.sent_count:
            self._events.push_completed(origin, result.sent_count, await self._run(self.engine.get_last_push_version))
        return result

    async def resync(self) -> SyncResult:
        """
        Replace local tracked tables with the hub's snapshot.

        Pending local changes are pushed first so the snapshot already
        contains them.
        """
        result = await self.push()
        from_version = await self._run(self.engine.get_last_server_version)
        snapshot = await self.transport.fetch_snapshot()
        await self._run(self.engine.apply_snapshot, snapshot)
        self._events.full_resync(self.engine.origin_id, from_version, snapshot.version)
        result.full_resync = True
        return result

    async def sync(self) -> SyncResult:
        """Pull then push."""
        start = time.perf_counter()
        pulled = await self.pull()
        pushed = await self.push()
        sync_latency_seconds.observe(time.perf_counter() - start, operation="sync")
        result = pulled.merge(pushed)
        logger.info(
            f"Sync completed: received={result.received_count}, applied={result.applied_count}, "
            f"sent={result.sent_count}, conflicts={result.conflict_count}"
        )
        return result

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
