"""
Request activity logging for the field agent.
Every call that changes the offline queues or drives a sync is logged with its
outcome and duration, so a support session can reconstruct what the device did.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

# Endpoints that mutate queued data or control the sync engine
TRACKED_PATH_PREFIXES = (
    "/api/v1/offline",
    "/api/v1/recordings",
    "/api/v1/sync",
    "/api/v1/connectivity",
)

ACTION_MAP = {
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


class ActivityLogMiddleware(BaseHTTPMiddleware):
    """Logs mutating requests to queue and sync endpoints."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method not in ACTION_MAP or not path.startswith(TRACKED_PATH_PREFIXES):
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        parts = [p for p in path.split("/") if p]
        resource = parts[2] if len(parts) >= 3 else "unknown"
        client = request.client.host if request.client else "local"

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "%s %s %s -> %d in %.1f ms (client=%s)",
            ACTION_MAP[request.method], resource, path,
            response.status_code, elapsed_ms, client,
        )
        return response
