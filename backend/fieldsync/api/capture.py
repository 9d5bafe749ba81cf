from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..services.capture import GeoLocation, PhotoUpload
from ..services.coordinator import SyncCoordinator
from ..services.photo_compression import PhotoFile
from .deps import get_coordinator
from .schemas import QueuedRecordResponse

router = APIRouter(prefix="/offline", tags=["offline"])


class CamelPayload(BaseModel):
    """Stored payloads use the BCA API's camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class AssessmentCreate(CamelPayload):
    project_id: str
    asset_id: Optional[str] = None
    component_code: Optional[str] = None  # UNIFORMAT II code
    component_name: Optional[str] = None
    component_location: Optional[str] = None
    condition: Optional[Literal["good", "fair", "poor", "not_assessed"]] = None
    status: Optional[Literal["initial", "active", "completed"]] = None
    observations: Optional[str] = None
    recommendations: Optional[str] = None
    remaining_useful_life: Optional[int] = None
    review_year: Optional[int] = None
    last_time_action: Optional[int] = None
    estimated_repair_cost: Optional[float] = None
    replacement_value: Optional[float] = None
    action_year: Optional[int] = None


class DeficiencyCreate(CamelPayload):
    assessment_id: str
    project_id: str
    component_code: Optional[str] = None
    description: str
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    priority: Literal["immediate", "short_term", "medium_term", "long_term"] = "medium_term"
    estimated_cost: Optional[float] = None


class QueuedResponse(BaseModel):
    local_id: str
    saved_offline: bool


class PhotoQueuedResponse(QueuedResponse):
    compression_ratio: Optional[int] = None
    original_size: int
    stored_size: int
    warning: Optional[str] = None


@router.post("/assessments", response_model=QueuedResponse, status_code=status.HTTP_201_CREATED)
def queue_assessment(
    body: AssessmentCreate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    local_id = coordinator.capture.save_assessment(body.to_payload())
    return QueuedResponse(local_id=local_id, saved_offline=not coordinator.connectivity.is_online)


@router.get("/assessments", response_model=List[QueuedRecordResponse])
def list_assessments(
    project_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    return coordinator.capture.get_project_assessments(project_id)


@router.post("/deficiencies", response_model=QueuedResponse, status_code=status.HTTP_201_CREATED)
def queue_deficiency(
    body: DeficiencyCreate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    payload = body.to_payload()
    assessment_id = payload.pop("assessmentId")
    local_id = coordinator.capture.save_deficiency(assessment_id, payload)
    return QueuedResponse(local_id=local_id, saved_offline=not coordinator.connectivity.is_online)


@router.post("/photos", response_model=PhotoQueuedResponse, status_code=status.HTTP_201_CREATED)
async def queue_photo(
    assessment_id: str = Form(...),
    project_id: str = Form(...),
    caption: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    altitude: Optional[float] = Form(None),
    accuracy: Optional[float] = Form(None),
    image: UploadFile = File(...),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    data = await image.read()
    location = None
    if latitude is not None and longitude is not None:
        location = GeoLocation(latitude, longitude, altitude, accuracy)

    result = coordinator.capture.attach_photo(
        PhotoUpload(
            assessment_id=assessment_id,
            project_id=project_id,
            photo=PhotoFile(
                file_name=image.filename or "photo.jpg",
                mime_type=image.content_type or "application/octet-stream",
                data=data,
            ),
            caption=caption,
            location=location,
        )
    )
    compression = result.compression
    return PhotoQueuedResponse(
        local_id=result.photo_id,
        saved_offline=result.saved_offline,
        compression_ratio=compression.compression_ratio if compression else None,
        original_size=len(data),
        stored_size=compression.compressed_size if compression else len(data),
        warning=result.warning,
    )


@router.get("/photos/{assessment_id}", response_model=List[QueuedRecordResponse])
def list_photos(
    assessment_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    return coordinator.capture.get_assessment_photos(assessment_id)
