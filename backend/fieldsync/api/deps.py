from fastapi import Request

from ..services.coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator
