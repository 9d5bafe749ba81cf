"""
Sync engine.
Drains the local queues into the BCA API when the device is online and
reconciles local records with the identifiers the server assigns.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..models.base import utcnow
from ..models.offline import OfflineRecord, RecordCategory, SyncStatus
from .connectivity import ConnectivityMonitor
from .drain import CircuitBreaker, ItemError
from .events import EventChannel
from .local_store import LocalStore, StorageError
from .recording_queue import RecordingQueue
from .remote_api import RemoteAPIClient

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync"

# Parents before children: photos and deficiencies reference assessments
SYNC_ORDER = (
    RecordCategory.ASSESSMENTS,
    RecordCategory.DEFICIENCIES,
    RecordCategory.PHOTOS,
    RecordCategory.RECORDINGS,
)


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SyncEventType(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class SyncProgress:
    total: int
    completed: int
    failed: int
    current: Optional[str] = None
    category: Optional[str] = None

    @property
    def percentage(self) -> int:
        if not self.total:
            return 100
        return round(self.completed / self.total * 100)

    def to_dict(self) -> Dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "current": self.current,
            "category": self.category,
            "percentage": self.percentage,
        }


@dataclass
class SyncResult:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    errors: List[ItemError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.aborted

    @property
    def state(self) -> SyncState:
        return SyncState.ABORTED if self.aborted else SyncState.COMPLETED

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "errors": [e.__dict__ for e in self.errors],
        }


@dataclass
class SyncEvent:
    type: SyncEventType
    progress: Optional[SyncProgress] = None
    result: Optional[SyncResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "type": self.type.value,
            "progress": self.progress.to_dict() if self.progress else None,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


class _SkipItem(Exception):
    """The record depends on a parent that has not reached the server yet."""


class MissingParentError(Exception):
    """The record references an assessment this device no longer knows."""


class SyncEngine:
    """
    Coordinates one drain pass at a time across all local queues.

    ``start`` is single-flight: calling it while a run is in progress is a
    no-op that returns ``None``. ``stop`` is cooperative and only takes effect
    between items.
    """

    def __init__(
        self,
        store: LocalStore,
        api: RemoteAPIClient,
        connectivity: ConnectivityMonitor,
        recording_queue: Optional[RecordingQueue] = None,
        notifier=None,
        failure_threshold: Optional[int] = None,
    ):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.recording_queue = recording_queue or RecordingQueue(
            store, api, connectivity, failure_threshold=failure_threshold
        )
        self.notifier = notifier
        self.failure_threshold = failure_threshold
        self.events: EventChannel[SyncEvent] = EventChannel("sync")
        self.state = SyncState.IDLE
        self.last_result: Optional[SyncResult] = None
        self._running = False
        self._stop_requested = False
        self._handlers = {
            RecordCategory.ASSESSMENTS: self._sync_assessment,
            RecordCategory.DEFICIENCIES: self._sync_deficiency,
            RecordCategory.PHOTOS: self._sync_photo,
        }

    @property
    def is_active(self) -> bool:
        return self._running

    def subscribe(self, listener: Callable[[SyncEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(listener)

    def stop(self) -> None:
        if self._running:
            logger.info("Sync stop requested")
            self._stop_requested = True

    async def retry_failed(self) -> Optional[SyncResult]:
        reset = self.store.reset_failed()
        logger.info("Reset %d failed records for retry", reset)
        if not self.connectivity.is_online:
            return None
        return await self.start()

    async def start(self, retry_failed: bool = False) -> Optional[SyncResult]:
        """Run one drain pass over every category and return its result."""
        if self._running:
            logger.info("Sync already in progress; ignoring start request")
            if self.notifier is not None:
                self.notifier.info("Sync in progress", "A sync is already running.")
            return None
        if not self.connectivity.is_online:
            logger.info("Offline; sync postponed until the connection returns")
            return SyncResult(aborted=True)

        # Claimed before the first await so a second caller sees it.
        self._running = True
        self._stop_requested = False
        self.state = SyncState.RUNNING
        result = SyncResult()
        try:
            self.events.emit(SyncEvent(SyncEventType.START))
            if retry_failed:
                self.store.reset_failed()

            total = sum(self.store.count(c, SyncStatus.PENDING) for c in SYNC_ORDER)
            progress = SyncProgress(total=total, completed=0, failed=0)
            breaker = CircuitBreaker(self.failure_threshold)

            for category in SYNC_ORDER:
                if result.aborted:
                    break
                if category is RecordCategory.RECORDINGS:
                    await self._drain_recordings(result, progress, breaker)
                else:
                    await self._drain_category(category, result, progress, breaker)

            if not result.aborted:
                self.store.set_meta(LAST_SYNC_KEY, utcnow().isoformat())
            self.last_result = result
            self.state = result.state
            logger.info(
                "Sync %s: %d synced, %d failed, %d skipped",
                self.state.value, result.synced, result.failed, result.skipped,
            )
            self.events.emit(SyncEvent(SyncEventType.COMPLETE, result=result))
            return result
        except StorageError as exc:
            self.state = SyncState.ABORTED
            self.events.emit(SyncEvent(SyncEventType.ERROR, error=str(exc)))
            raise
        finally:
            self._running = False
            self._stop_requested = False
            self.state = SyncState.IDLE

    # ------------------------------------------------------------------
    # Drain passes
    # ------------------------------------------------------------------

    def _emit_progress(self, progress: SyncProgress, record: OfflineRecord) -> None:
        progress.current = record.local_id
        progress.category = record.category
        self.events.emit(
            SyncEvent(
                SyncEventType.PROGRESS,
                progress=SyncProgress(
                    total=progress.total,
                    completed=progress.completed,
                    failed=progress.failed,
                    current=progress.current,
                    category=progress.category,
                ),
            )
        )

    async def _drain_category(
        self,
        category: RecordCategory,
        result: SyncResult,
        progress: SyncProgress,
        breaker: CircuitBreaker,
    ) -> None:
        handler = self._handlers[category]
        # Listed lazily so children see parent ids assigned earlier in the pass
        for record in self.store.list_by_status(category, SyncStatus.PENDING):
            if self._stop_requested:
                result.aborted = True
                return
            self._emit_progress(progress, record)
            try:
                await handler(record)
            except _SkipItem as exc:
                logger.info("Deferring %s: %s", record.local_id, exc)
                result.skipped += 1
                progress.completed += 1
                continue
            except StorageError:
                raise
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.warning("Sync of %s failed: %s", record.local_id, message)
                self._mark_failed(record, message)
                result.failed += 1
                result.errors.append(ItemError(record.local_id, category.value, message))
                progress.completed += 1
                progress.failed += 1
                breaker.record_failure()
                if breaker.tripped:
                    logger.warning(
                        "Aborting sync pass after %d consecutive failures",
                        breaker.consecutive_failures,
                    )
                    result.aborted = True
                    return
                continue

            result.synced += 1
            progress.completed += 1
            breaker.record_success()

    async def _drain_recordings(
        self, result: SyncResult, progress: SyncProgress, breaker: CircuitBreaker
    ) -> None:
        drained = await self.recording_queue.process_queue(
            should_continue=lambda: not self._stop_requested,
            breaker=breaker,
            on_item=lambda record: self._emit_progress(progress, record),
            notify=False,
        )
        result.synced += drained.succeeded
        result.failed += drained.failed
        result.errors.extend(drained.errors)
        result.aborted = result.aborted or drained.aborted
        progress.completed += drained.processed
        progress.failed += drained.failed

    # ------------------------------------------------------------------
    # Per-category handlers
    # ------------------------------------------------------------------

    def _mark_failed(self, record: OfflineRecord, message: str) -> None:
        current = self.store.get(record.local_id)
        if current is None:
            return
        if current.status == SyncStatus.PENDING.value:
            # Failed before the upload began
            current = self.store.update_status(record.local_id, SyncStatus.UPLOADING)
        if current.status == SyncStatus.UPLOADING.value:
            self.store.update_status(record.local_id, SyncStatus.FAILED, error=message)

    def _resolve_parent(self, record: OfflineRecord) -> OfflineRecord:
        """
        Point a child at its assessment's server id. Children of an assessment
        still in the queue are deferred; children of one that is neither queued
        nor known to the server fail.
        """
        parent = record.parent_id
        if not parent or not parent.startswith(f"offline_{RecordCategory.ASSESSMENTS.value}_"):
            return record

        remote_id = self.store.resolve_remote_id(parent)
        if remote_id is not None:
            self.store.reassign_parent(parent, remote_id)
            return self.store.get(record.local_id)
        if self.store.get(parent) is not None:
            raise _SkipItem(f"waiting for assessment {parent}")
        raise MissingParentError(f"assessment {parent} is not queued and was never synced")

    async def _sync_assessment(self, record: OfflineRecord) -> None:
        self.store.update_status(record.local_id, SyncStatus.UPLOADING)
        response = await self.api.sync_assessment(record)
        remote_id = response["assessmentId"]
        if response.get("conflict"):
            logger.warning(
                "Conflict syncing %s resolved as %s",
                record.local_id, response.get("resolution", "server_wins"),
            )

        self.store.assign_remote_id(record.local_id, remote_id)
        self.store.remember_remote_id(record.local_id, remote_id)
        self.store.reassign_parent(record.local_id, remote_id)
        self.store.update_status(record.local_id, SyncStatus.SYNCED)
        self.store.remove(record.local_id)

    async def _sync_deficiency(self, record: OfflineRecord) -> None:
        record = self._resolve_parent(record)
        self.store.update_status(record.local_id, SyncStatus.UPLOADING)
        response = await self.api.sync_deficiency(record)
        self.store.assign_remote_id(record.local_id, response["deficiencyId"])
        self.store.update_status(record.local_id, SyncStatus.SYNCED)
        self.store.remove(record.local_id)

    async def _sync_photo(self, record: OfflineRecord) -> None:
        record = self._resolve_parent(record)
        self.store.update_status(record.local_id, SyncStatus.UPLOADING, progress=0)
        response = await self.api.sync_photo(record)
        self.store.assign_remote_id(record.local_id, response["photoId"])
        self.store.update_status(record.local_id, SyncStatus.SYNCED)
        # Synced photos stay for previews until cleanup; the original copy goes.
        self.store.release_original(record.local_id)
