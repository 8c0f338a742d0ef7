"""
base.py - Abstract base class for transport adapters.

A transport connects a replica to the hub it syncs with. All
transport implementations must inherit from TransportAdapter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from tablesync.clients import ReplicaWatermark
from tablesync.protocol.batch import SyncBatch
from tablesync.retention import Snapshot


@dataclass
class SyncResult:
    """Result of a sync operation."""
    sent_count: int = 0
    received_count: int = 0
    applied_count: int = 0
    conflict_count: int = 0
    full_resync: bool = False
    error: str | None = None

    def merge(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            sent_count=self.sent_count + other.sent_count,
            received_count=self.received_count + other.received_count,
            applied_count=self.applied_count + other.applied_count,
            conflict_count=self.conflict_count + other.conflict_count,
            full_resync=self.full_resync or other.full_resync,
            error=self.error or other.error,
        )


class TransportAdapter(ABC):
    """
    Abstract base class for sync transport adapters.

    Implementations must provide methods for:
    - Pulling batches of remote changes
    - Pushing local changes
    - Reporting the replica's watermark
    - Fetching a full snapshot
    """

    @abstractmethod
    async def health(self) -> bool:
        """Check that the remote endpoint is reachable."""

    @abstractmethod
    async def fetch_changes(self, from_version: int, batch_size: int) -> SyncBatch:
        """
        Fetch the next batch after from_version.

        Raises:
            FullResyncRequired: If the remote purged entries after from_version
            HashMismatch: If the batch fails verification
        """

    @abstractmethod
    async def push_changes(self, batch: SyncBatch, origin_id: str) -> int:
        """
        Send local changes to the remote.

        Returns:
            Number of changes the remote applied
        """

    @abstractmethod
    async def register_client(self, origin_id: str, last_sync_version: int) -> ReplicaWatermark:
        """Report the highest version this replica has applied."""

    @abstractmethod
    async def fetch_snapshot(self) -> Snapshot:
        """Fetch the full contents of the remote's tracked tables."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport name for logging."""
