"""
http_transport.py - HTTP-based sync transport.

Talks to the FastAPI sync server (tablesync.transport.server).
"""

import logging
from typing import Any

import httpx

from tablesync.clients import ReplicaWatermark
from tablesync.errors import FullResyncRequired, TransportError
from tablesync.protocol.batch import SyncBatch, batch_from_wire, batch_to_wire
from tablesync.retention import Snapshot, snapshot_from_wire
from tablesync.transport.base import TransportAdapter

logger = logging.getLogger(__name__)


class HTTPTransport(TransportAdapter):
    """
    HTTP REST transport for sync operations.

    Endpoints expected on server:
    - GET  /sync/health
    - GET  /sync/changes?fromVersion=&batchSize=
    - POST /sync/changes
    - POST /sync/clients
    - GET  /sync/snapshot

    Args:
        base_url: Server root, e.g. http://localhost:8000
        origin_id: This replica's origin
        timeout: Request timeout in seconds
        client: Pre-built httpx.AsyncClient (owned by the caller)
    """

    def __init__(
        self,
        base_url: str,
        origin_id: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._origin_id = origin_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "HTTP"

    async def health(self) -> bool:
        try:
            data = await self._request("GET", "/sync/health")
        except TransportError as e:
            logger.error(f"HTTP health check failed: {e}")
            return False
        return data.get("status") == "ok"

    async def fetch_changes(self, from_version: int, batch_size: int) -> SyncBatch:
        data = await self._request(
            "GET",
            "/sync/changes",
            params={"fromVersion": from_version, "batchSize": batch_size},
        )
        return batch_from_wire(data)

    async def push_changes(self, batch: SyncBatch, origin_id: str) -> int:
        if batch.is_empty:
            return 0
        wire = batch_to_wire(batch)
        data = await self._request(
            "POST",
            "/sync/changes",
            json={"changes": wire["changes"], "originId": origin_id, "batchHash": wire["batch_hash"]},
        )
        return data.get("accepted_count", 0)

    async def register_client(self, origin_id: str, last_sync_version: int) -> ReplicaWatermark:
        data = await self._request(
            "POST",
            "/sync/clients",
            json={"originId": origin_id, "lastSyncVersion": last_sync_version},
        )
        return ReplicaWatermark(
            origin_id=data["origin_id"],
            last_sync_version=data["last_sync_version"],
            last_sync_timestamp=data["last_sync_timestamp"],
            created_at=data["created_at"],
        )

    async def fetch_snapshot(self) -> Snapshot:
        return snapshot_from_wire(await self._request("GET", "/sync/snapshot"))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        """
        Send a request and decode the JSON body.

        Raises:
            FullResyncRequired: On 410 Gone
            TransportError: On connection failures and other error statuses
        """
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code == 410:
            body = response.json()
            raise FullResyncRequired(body.get("from_version", 0), body.get("purged_through", 0))
        if response.status_code >= 400:
            logger.error(f"{method} {path} returned {response.status_code}")
            raise TransportError(
                f"{method} {path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()
