from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from ..services.coordinator import SyncCoordinator
from .deps import get_coordinator
from .schemas import QueuedRecordResponse

router = APIRouter(prefix="/recordings", tags=["recordings"])


class RecordingQueuedResponse(BaseModel):
    local_id: str
    context: str
    saved_offline: bool


class RecordingHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    local_id: str
    context: Optional[str]
    audio_url: str
    transcription: Optional[str]
    mime_type: Optional[str]
    duration_seconds: Optional[int]
    recorded_at: datetime


class QueueStatsResponse(BaseModel):
    total: int
    pending: int
    uploading: int
    synced: int
    failed: int
    size_bytes: int
    is_processing_queue: bool


@router.post("", response_model=RecordingQueuedResponse, status_code=status.HTTP_201_CREATED)
async def queue_recording(
    context: str = Form(...),
    duration_seconds: Optional[int] = Form(None),
    audio: UploadFile = File(...),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Queue a voice note; when online it is uploaded and transcribed right away."""
    record = await coordinator.recordings.record(
        await audio.read(),
        context,
        mime_type=audio.content_type or "audio/webm",
        duration_seconds=duration_seconds,
    )
    return RecordingQueuedResponse(
        local_id=record.local_id,
        context=context,
        saved_offline=not coordinator.connectivity.is_online,
    )


@router.get("", response_model=List[QueuedRecordResponse])
def get_all_recordings(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.recordings.get_all_recordings()


@router.get("/pending", response_model=List[QueuedRecordResponse])
def get_pending_recordings(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.recordings.get_pending_recordings()


@router.get("/history", response_model=List[RecordingHistoryResponse])
def get_history(
    context: Optional[str] = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    return coordinator.recordings.get_history(context)


@router.get("/stats", response_model=QueueStatsResponse)
def get_stats(coordinator: SyncCoordinator = Depends(get_coordinator)):
    stats = coordinator.recordings.stats()
    return QueueStatsResponse(
        is_processing_queue=coordinator.recordings.is_processing_queue,
        **stats.__dict__,
    )


@router.post("/process")
async def process_queue(coordinator: SyncCoordinator = Depends(get_coordinator)):
    result = await coordinator.recordings.process_queue()
    return result.to_dict()


@router.post("/retry")
async def retry_failed(coordinator: SyncCoordinator = Depends(get_coordinator)):
    result = await coordinator.recordings.retry_failed()
    return result.to_dict()


@router.delete("")
def clear_queue(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return {"deleted": coordinator.recordings.clear_queue()}
