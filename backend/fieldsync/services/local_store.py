"""
Local durable store for offline capture.
Holds queued assessments, deficiencies, photos and voice recordings on the device
until the sync engine confirms them against the BCA API. Survives restarts.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.config import settings
from ..models import base as db_base
from ..models.base import Base, generate_uuid, utcnow
from ..models.offline import (
    OfflineRecord,
    RecordCategory,
    RecordingHistory,
    StorageMetadata,
    SyncStatus,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024

ALLOWED_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.UPLOADING},
    SyncStatus.UPLOADING: {SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.PENDING},
    SyncStatus.FAILED: {SyncStatus.PENDING},
    SyncStatus.SYNCED: set(),
}

INDEXED_FIELDS = ("parent_id", "status", "remote_id")

REMOTE_ID_KEY_PREFIX = "remote_id:"


class StorageError(Exception):
    """The local store could not read or write."""


class StorageQuotaError(StorageError):
    """Writing the record would exceed the configured storage limits."""


class RecordNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    pass


@dataclass
class CategoryStats:
    total: int = 0
    pending: int = 0
    uploading: int = 0
    synced: int = 0
    failed: int = 0
    size_bytes: int = 0


@dataclass
class StorageStats:
    """Counts per category, recomputed on demand."""
    categories: Dict[str, CategoryStats] = field(default_factory=dict)

    def _sum(self, attr: str) -> int:
        return sum(getattr(c, attr) for c in self.categories.values())

    @property
    def total(self) -> int:
        return self._sum("total")

    @property
    def pending(self) -> int:
        return self._sum("pending")

    @property
    def uploading(self) -> int:
        return self._sum("uploading")

    @property
    def failed(self) -> int:
        return self._sum("failed")

    @property
    def size_bytes(self) -> int:
        return self._sum("size_bytes")

    def __getitem__(self, category: str) -> CategoryStats:
        return self.categories[category]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: asdict(c) for name, c in self.categories.items()}
        data.update(
            total=self.total,
            pending=self.pending,
            failed=self.failed,
            size_bytes=self.size_bytes,
        )
        return data


def _category(value: Union[RecordCategory, str]) -> str:
    return RecordCategory(value).value


def _status(value: Union[SyncStatus, str]) -> SyncStatus:
    return SyncStatus(value)


class LocalStore:
    """
    Categorised key-object store backed by SQLAlchemy.

    Records are keyed by ``local_id``. All mutations run in their own
    transaction; the application layer adds no locking on top.
    """

    def __init__(self, bind=None):
        self.bind = bind if bind is not None else db_base.engine
        self._session_factory = sessionmaker(
            bind=self.bind, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def init_schema(self) -> None:
        Base.metadata.create_all(bind=self.bind)

    @contextmanager
    def _session(self) -> Iterator:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Local store operation failed: %s", exc)
            raise StorageError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _load(session, local_id: str) -> OfflineRecord:
        record = session.query(OfflineRecord).filter(OfflineRecord.local_id == local_id).first()
        if record is None:
            raise RecordNotFoundError(f"Offline record not found: {local_id}")
        return record

    # ------------------------------------------------------------------
    # Key-object primitives
    # ------------------------------------------------------------------

    def get(self, local_id: str) -> Optional[OfflineRecord]:
        with self._session() as session:
            return session.query(OfflineRecord).filter(OfflineRecord.local_id == local_id).first()

    def put(self, record: OfflineRecord) -> OfflineRecord:
        with self._session() as session:
            return session.merge(record)

    def query_by_index(
        self, category: Union[RecordCategory, str], index: str, value: Any
    ) -> List[OfflineRecord]:
        if index not in INDEXED_FIELDS:
            raise ValueError(f"Unknown index: {index}")
        column = getattr(OfflineRecord, index)
        with self._session() as session:
            return (
                session.query(OfflineRecord)
                .filter(OfflineRecord.category == _category(category), column == value)
                .order_by(OfflineRecord.created_at, OfflineRecord.id)
                .all()
            )

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def save(
        self,
        category: Union[RecordCategory, str],
        payload: Optional[Dict[str, Any]] = None,
        parent_id: Optional[str] = None,
        blob: Optional[bytes] = None,
        original_blob: Optional[bytes] = None,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        local_id: Optional[str] = None,
    ) -> str:
        """Write a new record with ``status=pending`` and return its local id."""
        category = _category(category)
        local_id = local_id or f"offline_{category}_{generate_uuid()}"
        size = len(blob or b"") + len(original_blob or b"")

        if category == RecordCategory.PHOTOS.value and blob is not None:
            if len(blob) > settings.MAX_PHOTO_SIZE_MB * MB:
                raise StorageQuotaError(
                    f"Photo exceeds the {settings.MAX_PHOTO_SIZE_MB} MB limit"
                )
        if self.usage_bytes() + size > settings.MAX_STORAGE_MB * MB:
            raise StorageQuotaError("Storage is full. Please sync or clear old data.")

        record = OfflineRecord(
            local_id=local_id,
            category=category,
            parent_id=parent_id,
            payload=dict(payload or {}),
            blob=blob,
            original_blob=original_blob,
            file_name=file_name,
            mime_type=mime_type,
            size_bytes=size,
            status=SyncStatus.PENDING.value,
            retry_count=0,
            upload_progress=0,
            created_at=utcnow(),
        )
        with self._session() as session:
            session.add(record)
        logger.info("Queued %s record %s (%d bytes)", category, local_id, size)
        return local_id

    def get_by_parent(
        self, parent_id: str, category: Optional[Union[RecordCategory, str]] = None
    ) -> List[OfflineRecord]:
        """Records under a logical parent, oldest first."""
        with self._session() as session:
            query = session.query(OfflineRecord).filter(OfflineRecord.parent_id == parent_id)
            if category is not None:
                query = query.filter(OfflineRecord.category == _category(category))
            return query.order_by(OfflineRecord.created_at, OfflineRecord.id).all()

    def list_by_status(
        self, category: Union[RecordCategory, str], status: Union[SyncStatus, str]
    ) -> List[OfflineRecord]:
        return self.query_by_index(category, "status", _status(status).value)

    def list_category(self, category: Union[RecordCategory, str]) -> List[OfflineRecord]:
        with self._session() as session:
            return (
                session.query(OfflineRecord)
                .filter(OfflineRecord.category == _category(category))
                .order_by(OfflineRecord.created_at, OfflineRecord.id)
                .all()
            )

    def count(self, category: Union[RecordCategory, str], status: Union[SyncStatus, str]) -> int:
        with self._session() as session:
            return (
                session.query(func.count(OfflineRecord.id))
                .filter(
                    OfflineRecord.category == _category(category),
                    OfflineRecord.status == _status(status).value,
                )
                .scalar()
            )

    def update_status(
        self,
        local_id: str,
        status: Union[SyncStatus, str],
        error: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> OfflineRecord:
        new_status = _status(status)
        if new_status is SyncStatus.FAILED and not error:
            raise ValueError("A failed status requires an error message")

        with self._session() as session:
            record = self._load(session, local_id)
            current = _status(record.status)
            progress_only = current is new_status is SyncStatus.UPLOADING
            if not progress_only and new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"{local_id}: cannot move from {current.value} to {new_status.value}"
                )

            record.status = new_status.value
            if progress is not None:
                record.upload_progress = max(0, min(100, int(progress)))
            if new_status is SyncStatus.FAILED:
                record.error_message = error
                record.retry_count = (record.retry_count or 0) + 1
                record.upload_progress = 0
            elif new_status is SyncStatus.SYNCED:
                record.error_message = None
                record.upload_progress = 100
            elif new_status is SyncStatus.PENDING:
                record.error_message = error
                record.upload_progress = 0
            return record

    def assign_remote_id(self, local_id: str, remote_id: Union[str, int]) -> OfflineRecord:
        remote_id = str(remote_id)
        with self._session() as session:
            record = self._load(session, local_id)
            if record.remote_id is not None and record.remote_id != remote_id:
                raise InvalidTransitionError(
                    f"{local_id} already has remote id {record.remote_id}"
                )
            record.remote_id = remote_id
            return record

    def reassign_parent(self, old_parent_id: str, new_parent_id: Union[str, int]) -> int:
        """Point children of a freshly synced parent at its server id."""
        with self._session() as session:
            updated = (
                session.query(OfflineRecord)
                .filter(OfflineRecord.parent_id == old_parent_id)
                .update({OfflineRecord.parent_id: str(new_parent_id)}, synchronize_session=False)
            )
        if updated:
            logger.info("Re-parented %d records from %s to %s", updated, old_parent_id, new_parent_id)
        return updated

    def release_original(self, local_id: str) -> None:
        """Drop the uncompressed copy of a synced photo."""
        with self._session() as session:
            record = self._load(session, local_id)
            record.original_blob = None
            record.size_bytes = len(record.blob or b"")

    def remove(self, local_id: str) -> bool:
        """Delete a record. Removing an absent record is a no-op."""
        with self._session() as session:
            deleted = (
                session.query(OfflineRecord)
                .filter(OfflineRecord.local_id == local_id)
                .delete(synchronize_session=False)
            )
        return bool(deleted)

    def clear(self, category: Union[RecordCategory, str]) -> int:
        with self._session() as session:
            return (
                session.query(OfflineRecord)
                .filter(OfflineRecord.category == _category(category))
                .delete(synchronize_session=False)
            )

    def reset_failed(self, category: Optional[Union[RecordCategory, str]] = None) -> int:
        """Move failed records back to pending so the next pass picks them up."""
        with self._session() as session:
            query = session.query(OfflineRecord).filter(
                OfflineRecord.status == SyncStatus.FAILED.value
            )
            if category is not None:
                query = query.filter(OfflineRecord.category == _category(category))
            return query.update(
                {
                    OfflineRecord.status: SyncStatus.PENDING.value,
                    OfflineRecord.upload_progress: 0,
                },
                synchronize_session=False,
            )

    def recover_interrupted(self) -> int:
        """
        Records left in ``uploading`` by a previous process are indeterminate.
        Send them back to pending; the server de-duplicates on the offline id.
        """
        with self._session() as session:
            recovered = (
                session.query(OfflineRecord)
                .filter(OfflineRecord.status == SyncStatus.UPLOADING.value)
                .update(
                    {
                        OfflineRecord.status: SyncStatus.PENDING.value,
                        OfflineRecord.upload_progress: 0,
                        OfflineRecord.error_message: "Interrupted during upload",
                    },
                    synchronize_session=False,
                )
            )
        if recovered:
            logger.warning("Recovered %d interrupted uploads for re-validation", recovered)
        return recovered

    # ------------------------------------------------------------------
    # Statistics & housekeeping
    # ------------------------------------------------------------------

    def stats(self) -> StorageStats:
        stats = StorageStats({c.value: CategoryStats() for c in RecordCategory})
        with self._session() as session:
            rows = (
                session.query(
                    OfflineRecord.category,
                    OfflineRecord.status,
                    func.count(OfflineRecord.id),
                    func.coalesce(func.sum(OfflineRecord.size_bytes), 0),
                )
                .group_by(OfflineRecord.category, OfflineRecord.status)
                .all()
            )
        for category, status, count, size in rows:
            bucket = stats.categories.setdefault(category, CategoryStats())
            bucket.total += count
            bucket.size_bytes += int(size)
            setattr(bucket, status, getattr(bucket, status) + count)
        return stats

    def usage_bytes(self) -> int:
        with self._session() as session:
            return int(
                session.query(func.coalesce(func.sum(OfflineRecord.size_bytes), 0)).scalar()
            )

    def check_quota(self) -> Tuple[bool, Optional[str]]:
        limit = settings.MAX_STORAGE_MB * MB
        percent_used = (self.usage_bytes() / limit) * 100 if limit else 100.0
        if percent_used >= 95:
            return False, "Storage is almost full. Please sync or clear old data."
        return True, None

    def cleanup_synced(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete synced photos older than the retention window."""
        cutoff = (now or utcnow()) - timedelta(days=settings.SYNCED_PHOTO_TTL_DAYS)
        with self._session() as session:
            query = session.query(OfflineRecord).filter(
                OfflineRecord.category == RecordCategory.PHOTOS.value,
                OfflineRecord.status == SyncStatus.SYNCED.value,
                OfflineRecord.updated_at < cutoff,
            )
            freed = int(
                query.with_entities(func.coalesce(func.sum(OfflineRecord.size_bytes), 0)).scalar()
            )
            deleted = query.delete(synchronize_session=False)
        logger.info("Cleanup removed %d synced photos (%d bytes)", deleted, freed)
        return {"deleted_photos": deleted, "freed_bytes": freed}

    # ------------------------------------------------------------------
    # Metadata & recording history
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: Any = None) -> Any:
        with self._session() as session:
            row = session.get(StorageMetadata, key)
            return default if row is None else row.value

    def set_meta(self, key: str, value: Any) -> None:
        with self._session() as session:
            session.merge(StorageMetadata(key=key, value=value))

    def remember_remote_id(self, local_id: str, remote_id: Union[str, int]) -> None:
        """Keep the server id of a synced record after the record itself is gone."""
        self.set_meta(f"{REMOTE_ID_KEY_PREFIX}{local_id}", str(remote_id))

    def resolve_remote_id(self, local_id: str) -> Optional[str]:
        return self.get_meta(f"{REMOTE_ID_KEY_PREFIX}{local_id}")

    def add_history(
        self,
        record: OfflineRecord,
        audio_url: str,
        transcription: Optional[str],
    ) -> RecordingHistory:
        entry = RecordingHistory(
            local_id=record.local_id,
            context=record.context,
            audio_url=audio_url,
            transcription=transcription,
            mime_type=record.mime_type,
            duration_seconds=(record.payload or {}).get("duration_seconds"),
            recorded_at=record.created_at,
        )
        with self._session() as session:
            session.add(entry)
        return entry

    def list_history(self, context: Optional[str] = None) -> List[RecordingHistory]:
        with self._session() as session:
            query = session.query(RecordingHistory)
            if context is not None:
                query = query.filter(RecordingHistory.context == context)
            return query.order_by(RecordingHistory.recorded_at, RecordingHistory.id).all()
