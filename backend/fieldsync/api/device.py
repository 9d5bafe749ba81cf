from fastapi import APIRouter, Depends
from typing import List, Optional
from pydantic import BaseModel

from ..services.coordinator import SyncCoordinator
from .deps import get_coordinator

router = APIRouter(tags=["device"])


class ConnectivityUpdate(BaseModel):
    online: bool


class PermissionUpdate(BaseModel):
    granted: bool


class PreferenceUpdate(BaseModel):
    enabled: Optional[bool] = None
    sync_complete: Optional[bool] = None
    offline_warning: Optional[bool] = None


class NotificationResponse(BaseModel):
    level: str
    title: str
    message: str
    kind: str
    created_at: str


@router.get("/connectivity")
def get_connectivity(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return {"online": coordinator.connectivity.is_online}


@router.put("/connectivity")
async def set_connectivity(
    body: ConnectivityUpdate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Bridge for the browser's online/offline events. Must run on the event loop."""
    changed = coordinator.connectivity.set_online(body.online)
    return {"online": coordinator.connectivity.is_online, "changed": changed}


@router.get("/notifications", response_model=List[NotificationResponse])
def get_notifications(
    peek: bool = False,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    notifier = coordinator.notifier
    toasts = notifier.recent() if peek else notifier.drain()
    return [NotificationResponse(**t.to_dict()) for t in toasts]


@router.put("/notifications/permission")
def set_permission(
    body: PermissionUpdate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    permission = coordinator.notifier.request_permission(body.granted)
    return {"permission": permission.value}


@router.put("/notifications/preferences")
def update_preferences(
    body: PreferenceUpdate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    preference = coordinator.notifier.update_preference(**body.model_dump())
    return preference.__dict__
