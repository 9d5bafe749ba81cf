"""
Application-owned wiring of the offline subsystem.
One coordinator is created at startup and torn down at shutdown; nothing in
the services keeps module-level state.
"""
import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from ..core.config import settings
from .capture import CaptureService
from .connectivity import ConnectivityMonitor
from .local_store import LocalStore
from .notifications import Notifier
from .recording_queue import RecordingQueue
from .remote_api import RemoteAPIClient
from .sync_engine import LAST_SYNC_KEY, SyncEngine

logger = logging.getLogger(__name__)


class SyncCoordinator:
    def __init__(
        self,
        store: Optional[LocalStore] = None,
        api: Optional[RemoteAPIClient] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        notifier: Optional[Notifier] = None,
        auto_sync: Optional[bool] = None,
        probe_interval: Optional[float] = None,
    ):
        self.store = store or LocalStore()
        self.api = api or RemoteAPIClient()
        self.connectivity = connectivity or ConnectivityMonitor(api=self.api)
        self.notifier = notifier or Notifier(self.store)
        self.recordings = RecordingQueue(self.store, self.api, self.connectivity, self.notifier)
        self.engine = SyncEngine(
            self.store, self.api, self.connectivity, self.recordings, self.notifier
        )
        self.capture = CaptureService(self.store, self.connectivity, self.notifier)

        self.auto_sync = settings.AUTO_SYNC_ON_RECONNECT if auto_sync is None else auto_sync
        self.probe_interval = (
            settings.CONNECTIVITY_PROBE_INTERVAL if probe_interval is None else probe_interval
        )
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: List[Callable[[], None]] = []

    async def startup(self) -> None:
        self.store.init_schema()
        self.store.recover_interrupted()
        self.store.cleanup_synced()

        self._unsubscribe.append(self.engine.subscribe(self.notifier.handle_sync_event))
        self._unsubscribe.append(self.connectivity.subscribe(self._on_connectivity))

        if self.probe_interval > 0:
            self._spawn(self.connectivity.run(self.probe_interval), name="probe")
        if self.auto_sync and self.connectivity.is_online:
            self._spawn(self.engine.start())
        logger.info("Offline sync coordinator started (online=%s)", self.connectivity.is_online)

    async def shutdown(self) -> None:
        """
        Stop accepting new work, let in-flight requests finish, and flag
        anything still uploading for re-validation on the next start.
        """
        self.engine.stop()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

        for task in list(self._tasks):
            if task.get_name().startswith("probe"):
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.store.recover_interrupted()
        logger.info("Offline sync coordinator stopped")

    async def wait_idle(self) -> None:
        """Wait for sync work already scheduled in the background."""
        pending = [t for t in self._tasks if not t.get_name().startswith("probe")]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Coroutine, name: str = "sync") -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; background work deferred")
            coro.close()
            return None
        task = loop.create_task(coro, name=f"{name}-{len(self._tasks)}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background sync task failed: %s", exc)

    def _on_connectivity(self, online: bool) -> None:
        self.notifier.handle_connectivity(online)
        if online and self.auto_sync:
            logger.info("Connection restored, starting sync")
            self._spawn(self.engine.start(retry_failed=True))

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.engine.state.value,
            "is_active": self.engine.is_active,
            "is_online": self.connectivity.is_online,
            "is_processing_recordings": self.recordings.is_processing_queue,
            "last_sync": self.store.get_meta(LAST_SYNC_KEY),
            "last_result": self.engine.last_result.to_dict() if self.engine.last_result else None,
            "stats": self.store.stats().to_dict(),
        }
