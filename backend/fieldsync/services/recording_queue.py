"""
Offline queue for voice notes.
Recordings captured without a connection wait here until they can be uploaded
and transcribed; transcripts are kept in the recording history.
"""
import logging
from typing import Callable, List, Optional

from ..models.base import utcnow
from ..models.offline import OfflineRecord, RecordCategory, RecordingHistory, SyncStatus
from .connectivity import ConnectivityMonitor
from .drain import CircuitBreaker, DrainResult, ItemError
from .local_store import CategoryStats, LocalStore, StorageError
from .remote_api import RemoteAPIClient

logger = logging.getLogger(__name__)

RECORDINGS = RecordCategory.RECORDINGS


def _extension(mime_type: str) -> str:
    return mime_type.split("/")[-1].split(";")[0] or "bin"


class RecordingQueue:
    def __init__(
        self,
        store: LocalStore,
        api: RemoteAPIClient,
        connectivity: ConnectivityMonitor,
        notifier=None,
        failure_threshold: Optional[int] = None,
    ):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.notifier = notifier
        self.failure_threshold = failure_threshold
        self._processing = False

    @property
    def is_processing_queue(self) -> bool:
        return self._processing

    def queue_recording(
        self,
        blob: bytes,
        context: str,
        mime_type: str = "audio/webm",
        duration_seconds: Optional[int] = None,
    ) -> OfflineRecord:
        """Store a recording as pending. Storage errors propagate to the caller."""
        if not blob:
            raise ValueError("Recording is empty")
        timestamp = utcnow()
        local_id = self.store.save(
            RECORDINGS,
            payload={
                "context": context,
                "timestamp": timestamp.isoformat(),
                "duration_seconds": duration_seconds,
            },
            parent_id=context,
            blob=blob,
            file_name=f"recording-{timestamp.strftime('%Y%m%d%H%M%S%f')}.{_extension(mime_type)}",
            mime_type=mime_type,
        )
        return self.store.get(local_id)

    async def record(
        self,
        blob: bytes,
        context: str,
        mime_type: str = "audio/webm",
        duration_seconds: Optional[int] = None,
    ) -> OfflineRecord:
        """Queue a recording and, when online, upload it straight away."""
        record = self.queue_recording(blob, context, mime_type, duration_seconds)
        if self.connectivity.is_online:
            await self.process_queue()
        elif self.notifier is not None:
            self.notifier.info(
                "Recording saved offline",
                "It will be uploaded and transcribed when you're back online.",
            )
        return record

    async def upload_and_transcribe(self, record: OfflineRecord) -> str:
        self.store.update_status(record.local_id, SyncStatus.UPLOADING)
        try:
            audio_url = await self.api.upload_audio(
                record.blob or b"", record.file_name, record.mime_type or "audio/webm"
            )
            text = await self.api.transcribe(audio_url)
        except Exception as exc:
            self.store.update_status(
                record.local_id, SyncStatus.FAILED, error=str(exc) or type(exc).__name__
            )
            raise

        self.store.add_history(record, audio_url, text)
        self.store.update_status(record.local_id, SyncStatus.SYNCED)
        self.store.remove(record.local_id)
        return text

    async def process_queue(
        self,
        should_continue: Optional[Callable[[], bool]] = None,
        breaker: Optional[CircuitBreaker] = None,
        on_item: Optional[Callable[[OfflineRecord], None]] = None,
        notify: bool = True,
    ) -> DrainResult:
        """
        Upload and transcribe pending recordings, oldest first.

        Single-flight: a call while a drain is running returns an empty result.
        Per-item failures are recorded on the item; after enough consecutive
        failures the rest of the pass is abandoned. Never raises for network
        errors.
        """
        result = DrainResult()
        if self._processing:
            logger.info("Recording queue is already being processed")
            return result
        if not self.connectivity.is_online:
            logger.debug("Offline; recording queue left for later")
            return result

        self._processing = True
        breaker = breaker or CircuitBreaker(self.failure_threshold)
        try:
            for record in self.store.list_by_status(RECORDINGS, SyncStatus.PENDING):
                if should_continue is not None and not should_continue():
                    result.aborted = True
                    break
                if on_item is not None:
                    on_item(record)
                try:
                    await self.upload_and_transcribe(record)
                except StorageError:
                    raise
                except Exception as exc:
                    logger.warning("Recording %s failed: %s", record.local_id, exc)
                    result.failed += 1
                    result.errors.append(
                        ItemError(record.local_id, RECORDINGS.value, str(exc) or type(exc).__name__)
                    )
                    breaker.record_failure()
                    if breaker.tripped:
                        logger.warning(
                            "Aborting recording uploads after %d consecutive failures",
                            breaker.consecutive_failures,
                        )
                        result.aborted = True
                        break
                else:
                    result.succeeded += 1
                    breaker.record_success()
        finally:
            self._processing = False

        if notify and self.notifier is not None:
            self._notify(result)
        return result

    def _notify(self, result: DrainResult) -> None:
        if result.succeeded and not result.failed:
            self.notifier.success(
                "Recordings transcribed", f"{result.succeeded} recording(s) uploaded"
            )
        elif result.failed:
            self.notifier.error(
                "Recording upload failed",
                f"{result.succeeded} uploaded, {result.failed} failed. Retry from the queue.",
            )

    async def retry_failed(self) -> DrainResult:
        reset = self.store.reset_failed(RECORDINGS)
        logger.info("Retrying %d failed recordings", reset)
        if reset and self.connectivity.is_online:
            return await self.process_queue()
        return DrainResult()

    def get_pending_recordings(self) -> List[OfflineRecord]:
        return self.store.list_by_status(RECORDINGS, SyncStatus.PENDING)

    def get_all_recordings(self) -> List[OfflineRecord]:
        return self.store.list_category(RECORDINGS)

    def get_history(self, context: Optional[str] = None) -> List[RecordingHistory]:
        return self.store.list_history(context)

    def clear_queue(self) -> int:
        return self.store.clear(RECORDINGS)

    def stats(self) -> CategoryStats:
        return self.store.stats()[RECORDINGS.value]
