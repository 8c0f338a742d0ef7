import asyncio
import logging
import threading
from enum import Enum
from typing import Callable, Optional

from tablesync.coordinator import SyncCoordinator
from tablesync.errors import SyncError, TransportError
from tablesync.metrics import SyncLogger
from tablesync.transport.base import SyncResult

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300.0


class SyncStatus(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


def backoff_delay(failures: int) -> float:
    """Seconds to wait after the given number of consecutive failures."""
    if failures <= 1:
        return 1.0
    return min(MAX_BACKOFF_SECONDS, 2.0 ** (failures - 1))


class SyncScheduler:
    """
    Background scheduler for periodic synchronization.

    Handles:
    - Periodic sync intervals
    - Exponential backoff on failure, capped at five minutes
    - Status reporting through an optional callback
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        interval_seconds: float = 60.0,
        on_status_change: Optional[Callable[[SyncStatus], None]] = None,
    ):
        self.coordinator = coordinator
        self.interval = interval_seconds
        self.on_status_change = on_status_change

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._status = SyncStatus.IDLE
        self._failures = 0
        self._events = SyncLogger("tablesync.scheduler")
        self.last_result: Optional[SyncResult] = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def failures(self) -> int:
        return self._failures

    def start(self, in_background: bool = True) -> None:
        """Start the sync scheduler."""
        if self._running:
            return
        self._running = True
        if in_background:
            self._thread = threading.Thread(target=self._run_thread, daemon=True)
            self._thread.start()
        else:
            asyncio.run(self._run_loop())

    def stop(self) -> None:
        """Stop the sync scheduler."""
        self._running = False
        if self._loop and self._stop_event:
            self._loop.call_soon_threadsafe(self._stop_event.set)
        if self._thread:
            self._thread.join(timeout=5.0)

    def _run_thread(self) -> None:
        asyncio.run(self._run_loop())

    async def _run_loop(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        logger.info(f"SyncScheduler started (interval={self.interval}s)")

        while self._running:
            try:
                await self.sync_now()
                delay = self.interval
            except SyncError:
                delay = backoff_delay(self._failures)
                logger.info(f"Retrying in {delay}s...")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                continue

        logger.info("SyncScheduler stopped")
        self._set_status(SyncStatus.OFFLINE)

    async def sync_now(self) -> SyncResult:
        """
        Perform a single sync cycle immediately.

        Raises:
            SyncError: After recording the failure and the error status
        """
        self._set_status(SyncStatus.SYNCING)
        try:
            if not await self.coordinator.transport.health():
                raise TransportError(f"Could not reach sync peer over {self.coordinator.transport.name}")
            result = await self.coordinator.sync()
        except SyncError as e:
            self._failures += 1
            self._events.sync_failed(self.coordinator.engine.origin_id, str(e), self._failures)
            self.last_result = SyncResult(error=str(e))
            self._set_status(SyncStatus.ERROR)
            raise

        self._failures = 0
        self.last_result = result
        self._set_status(SyncStatus.IDLE)
        return result

    def _set_status(self, status: SyncStatus) -> None:
        if self._status != status:
            self._status = status
            if self.on_status_change:
                self.on_status_change(status)
