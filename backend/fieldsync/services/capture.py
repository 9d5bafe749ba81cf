"""
Write path for field capture: assessments, deficiencies and photos are always
written to the local store first; the sync engine takes it from there.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models.offline import OfflineRecord, RecordCategory
from .connectivity import ConnectivityMonitor
from .local_store import LocalStore, StorageError
from .photo_compression import CompressionResult, PhotoFile, PreparedPhoto, prepare_photo

logger = logging.getLogger(__name__)


def _stored_file_name(file_name: str, prepared: PreparedPhoto) -> str:
    if prepared.compression is None:
        return file_name
    stem, dot, _ = file_name.rpartition(".")
    return f"{stem if dot else file_name}.jpg"


@dataclass
class GeoLocation:
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None


@dataclass
class PhotoUpload:
    assessment_id: str  # Offline id or server id
    project_id: str
    photo: PhotoFile
    caption: Optional[str] = None
    location: Optional[GeoLocation] = None


@dataclass
class PhotoUploadResult:
    photo_id: str
    saved_offline: bool
    compression: Optional[CompressionResult] = None
    warning: Optional[str] = None


class CaptureService:
    def __init__(
        self,
        store: LocalStore,
        connectivity: ConnectivityMonitor,
        notifier=None,
        auto_compress: bool = True,
    ):
        self.store = store
        self.connectivity = connectivity
        self.notifier = notifier
        self.auto_compress = auto_compress

    def _queued(self, noun: str) -> None:
        if self.notifier is None:
            return
        if self.connectivity.is_online:
            self.notifier.success(f"{noun} queued", f"{noun} queued for upload")
        else:
            self.notifier.success(
                f"{noun} saved offline",
                f"{noun} saved offline. Will sync when connection returns.",
            )

    def _save(self, noun: str, category: RecordCategory, **kwargs) -> str:
        try:
            local_id = self.store.save(category, **kwargs)
        except StorageError as exc:
            if self.notifier is not None:
                self.notifier.error(f"{noun} not saved", f"Failed to save {noun.lower()}: {exc}")
            raise
        self._queued(noun)
        return local_id

    def save_assessment(self, data: Dict[str, Any]) -> str:
        """Queue an assessment. The parent is the project it belongs to."""
        payload = dict(data)
        parent_id = payload.get("projectId")
        return self._save(
            "Assessment",
            RecordCategory.ASSESSMENTS,
            payload=payload,
            parent_id=str(parent_id) if parent_id is not None else None,
        )

    def _parent_id(self, assessment_id: str) -> str:
        # An assessment that already synced is addressed by its server id
        return self.store.resolve_remote_id(assessment_id) or assessment_id

    def save_deficiency(self, assessment_id: str, data: Dict[str, Any]) -> str:
        return self._save(
            "Deficiency",
            RecordCategory.DEFICIENCIES,
            payload=dict(data),
            parent_id=self._parent_id(assessment_id),
        )

    def attach_photo(self, upload: PhotoUpload) -> PhotoUploadResult:
        """
        Compress (when worthwhile) and queue a photo under an assessment.
        Compression problems only produce a warning; storage problems raise.
        """
        prepared = prepare_photo(upload.photo, auto_compress=self.auto_compress)
        payload: Dict[str, Any] = {
            "projectId": upload.project_id,
            "caption": upload.caption,
        }
        if upload.location is not None:
            payload.update(
                latitude=upload.location.latitude,
                longitude=upload.location.longitude,
                altitude=upload.location.altitude,
                locationAccuracy=upload.location.accuracy,
            )

        photo_id = self._save(
            "Photo",
            RecordCategory.PHOTOS,
            payload=payload,
            parent_id=self._parent_id(upload.assessment_id),
            blob=prepared.blob,
            original_blob=prepared.original if prepared.compression else None,
            file_name=_stored_file_name(upload.photo.file_name, prepared),
            mime_type=prepared.mime_type,
        )
        logger.debug("Photo %s attached to assessment %s", photo_id, upload.assessment_id)

        if self.notifier is not None:
            if prepared.compression is not None:
                self.notifier.info(
                    "Photo compressed",
                    f"Photo compressed: {prepared.compression.compression_ratio}% smaller",
                )
            if prepared.warning:
                self.notifier.warning("Compression skipped", prepared.warning)

        return PhotoUploadResult(
            photo_id=photo_id,
            saved_offline=not self.connectivity.is_online,
            compression=prepared.compression,
            warning=prepared.warning,
        )

    def get_assessment_photos(self, assessment_id: str) -> List[OfflineRecord]:
        return self.store.get_by_parent(self._parent_id(assessment_id), RecordCategory.PHOTOS)

    def get_project_assessments(self, project_id: str) -> List[OfflineRecord]:
        return self.store.get_by_parent(project_id, RecordCategory.ASSESSMENTS)
