from fastapi import APIRouter, Depends
from typing import Any, Dict, Optional
from pydantic import BaseModel
import logging

from ..services.coordinator import SyncCoordinator
from .deps import get_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncStartRequest(BaseModel):
    retry_failed: bool = False


class SyncRunResponse(BaseModel):
    started: bool
    result: Optional[Dict[str, Any]] = None


@router.post("/start", response_model=SyncRunResponse)
async def start_sync(
    body: Optional[SyncStartRequest] = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Run a sync pass now. A second request while one is running is ignored."""
    retry_failed = body.retry_failed if body else False
    result = await coordinator.engine.start(retry_failed=retry_failed)
    if result is None:
        return SyncRunResponse(started=False)
    return SyncRunResponse(started=True, result=result.to_dict())


@router.post("/stop")
def stop_sync(coordinator: SyncCoordinator = Depends(get_coordinator)):
    was_active = coordinator.engine.is_active
    coordinator.engine.stop()
    return {"stopping": was_active}


@router.post("/retry", response_model=SyncRunResponse)
async def retry_failed(coordinator: SyncCoordinator = Depends(get_coordinator)):
    result = await coordinator.engine.retry_failed()
    if result is None:
        return SyncRunResponse(started=False)
    return SyncRunResponse(started=True, result=result.to_dict())


@router.get("/status")
def get_status(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.status()


@router.get("/stats")
def get_stats(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.store.stats().to_dict()


@router.post("/cleanup")
def cleanup(coordinator: SyncCoordinator = Depends(get_coordinator)):
    result = coordinator.store.cleanup_synced()
    available, reason = coordinator.store.check_quota()
    logger.info("Manual cleanup: %s", result)
    return {**result, "storage_available": available, "reason": reason}
