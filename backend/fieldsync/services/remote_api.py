"""
BCA API client used by the sync engine and the recording queue.
Supports mock mode for development when the remote API is not configured.
"""
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from ..core.config import settings
from ..models.base import generate_uuid
from ..models.offline import OfflineRecord

logger = logging.getLogger(__name__)


class RemoteAPIError(Exception):
    """A request to the BCA API failed or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _iso(record: OfflineRecord) -> str:
    return record.created_at.isoformat() + "Z"


class RemoteAPIClient:
    """Async HTTP client for the offline-sync endpoints of the BCA API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        mock_mode: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_URL or "").rstrip("/") or None
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.timeout = timeout if timeout is not None else settings.REMOTE_API_TIMEOUT
        self.mock_mode = settings.REMOTE_MOCK_MODE if mock_mode is None else mock_mode
        self.transport = transport

    @property
    def is_mock(self) -> bool:
        return self.mock_mode or not self.base_url

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def _post(self, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self.transport,
            ) as client:
                resp = await client.post(path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteAPIError(
                f"{path} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteAPIError(f"{path} request failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteAPIError(f"{path} returned invalid JSON") from exc

    @staticmethod
    def _require(payload: Dict[str, Any], key: str, path: str) -> Any:
        if not isinstance(payload, dict) or payload.get(key) is None:
            raise RemoteAPIError(f"{path} response is missing '{key}'")
        return payload[key]

    # ------------------------------------------------------------------
    # Offline sync endpoints
    # ------------------------------------------------------------------

    async def sync_assessment(self, record: OfflineRecord) -> Dict[str, Any]:
        """
        Upsert an assessment created offline.
        Returns ``{"assessmentId": ..., "conflict": bool, "resolution": ...}``.
        """
        if self.is_mock:
            logger.debug("Using mock assessment sync (mock_mode=%s)", self.mock_mode)
            return {"assessmentId": generate_uuid(), "conflict": False}

        path = "/api/offline-sync/assessments"
        body = {
            "offlineId": record.local_id,
            "createdAt": _iso(record),
            **(record.payload or {}),
        }
        payload = await self._post(path, json=body)
        self._require(payload, "assessmentId", path)
        return payload

    async def sync_deficiency(self, record: OfflineRecord) -> Dict[str, Any]:
        if self.is_mock:
            return {"deficiencyId": generate_uuid()}

        path = "/api/offline-sync/deficiencies"
        body = {
            "offlineId": record.local_id,
            "createdAt": _iso(record),
            "assessmentId": record.parent_id,
            **(record.payload or {}),
        }
        payload = await self._post(path, json=body)
        self._require(payload, "deficiencyId", path)
        return payload

    async def sync_photo(self, record: OfflineRecord) -> Dict[str, Any]:
        """Upload a queued photo. Returns ``{"photoId": ..., "url": ...}``."""
        if self.is_mock:
            photo_id = generate_uuid()
            return {"photoId": photo_id, "url": f"mock://photos/{photo_id}"}

        path = "/api/offline-sync/photos"
        body = {
            "offlineId": record.local_id,
            "createdAt": _iso(record),
            "assessmentId": record.parent_id,
            "fileName": record.file_name,
            "mimeType": record.mime_type,
            "photoBlob": base64.b64encode(record.blob or b"").decode("ascii"),
            **(record.payload or {}),
        }
        payload = await self._post(path, json=body)
        self._require(payload, "photoId", path)
        return payload

    # ------------------------------------------------------------------
    # Voice notes
    # ------------------------------------------------------------------

    async def upload_audio(self, data: bytes, file_name: str, mime_type: str) -> str:
        """Multipart upload of a recording; returns the stored audio URL."""
        if self.is_mock:
            return f"mock://audio/{file_name}"

        path = "/api/upload"
        files = {"file": (file_name, data, mime_type)}
        payload = await self._post(path, files=files)
        return self._require(payload, "url", path)

    async def transcribe(self, audio_url: str) -> str:
        if self.is_mock:
            return "Mock transcription"

        path = "/api/transcribe"
        payload = await self._post(path, json={"audioUrl": audio_url})
        return self._require(payload, "text", path)

    async def health(self) -> bool:
        """True when the API answers its health endpoint."""
        if self.is_mock:
            return True
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.get("/health")
                return resp.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Health probe failed: %s", exc)
            return False
