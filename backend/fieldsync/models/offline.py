from enum import Enum
from sqlalchemy import Column, String, Text, Integer, DateTime, JSON, LargeBinary
from .base import Base, TimestampMixin, utcnow


class SyncStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SYNCED = "synced"
    FAILED = "failed"


class RecordCategory(str, Enum):
    ASSESSMENTS = "assessments"
    DEFICIENCIES = "deficiencies"
    PHOTOS = "photos"
    RECORDINGS = "recordings"


class OfflineRecord(Base, TimestampMixin):
    """A record captured on the device and waiting to reach the BCA API."""
    __tablename__ = "offline_records"

    # Autoincrement key breaks ties between records created in the same tick
    id = Column(Integer, primary_key=True, autoincrement=True)
    local_id = Column(String(80), unique=True, nullable=False, index=True)
    category = Column(String(20), nullable=False, index=True)
    parent_id = Column(String(100), nullable=True, index=True)
    remote_id = Column(String(100), nullable=True)

    payload = Column(JSON, nullable=False, default=dict)

    # Binary payloads: compressed + original for photos, audio for recordings
    blob = Column(LargeBinary, nullable=True)
    original_blob = Column(LargeBinary, nullable=True)
    file_name = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value, index=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    upload_progress = Column(Integer, nullable=False, default=0)  # 0-100

    @property
    def stored_bytes(self) -> int:
        return len(self.blob or b"") + len(self.original_blob or b"")

    @property
    def context(self):
        """Free-form tag for recordings."""
        return (self.payload or {}).get("context")

    def __repr__(self) -> str:
        return f"<OfflineRecord {self.local_id} {self.category} {self.status}>"


class RecordingHistory(Base):
    """Transcribed voice notes that made it to the server."""
    __tablename__ = "recording_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    local_id = Column(String(80), nullable=False)
    context = Column(String(255), nullable=True, index=True)
    audio_url = Column(String(1000), nullable=False)
    transcription = Column(Text, nullable=True)
    mime_type = Column(String(100), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    recorded_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class StorageMetadata(Base):
    __tablename__ = "storage_metadata"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
