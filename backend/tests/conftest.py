import asyncio
from collections import defaultdict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fieldsync.services.connectivity import ConnectivityMonitor
from fieldsync.services.local_store import LocalStore
from fieldsync.services.notifications import Notifier
from fieldsync.services.remote_api import RemoteAPIError


class FakeRemoteAPI:
    """
    Stand-in for the BCA API. Every call yields to the event loop once so
    concurrent callers interleave the way they would over the network.
    """

    def __init__(self):
        self.calls = []
        self._failures = defaultdict(int)
        self._next_id = 0
        self.conflict = False

    def fail_next(self, method: str, times: int = 1):
        self._failures[method] += times

    def calls_to(self, method: str):
        return [arg for name, arg in self.calls if name == method]

    async def _call(self, method: str, arg) -> str:
        self.calls.append((method, arg))
        await asyncio.sleep(0)
        if self._failures[method] > 0:
            self._failures[method] -= 1
            raise RemoteAPIError(f"{method} unavailable", status_code=503)
        self._next_id += 1
        return f"srv-{self._next_id}"

    async def sync_assessment(self, record):
        remote_id = await self._call("sync_assessment", record.local_id)
        return {"assessmentId": remote_id, "conflict": self.conflict, "resolution": "server_wins"}

    async def sync_deficiency(self, record):
        return {"deficiencyId": await self._call("sync_deficiency", record.local_id)}

    async def sync_photo(self, record):
        remote_id = await self._call("sync_photo", record.local_id)
        return {"photoId": remote_id, "url": f"https://files.example/{remote_id}.jpg"}

    async def upload_audio(self, data, file_name, mime_type):
        remote_id = await self._call("upload_audio", file_name)
        return f"https://files.example/audio/{remote_id}"

    async def transcribe(self, audio_url):
        await self._call("transcribe", audio_url)
        return f"Transcript of {audio_url}"

    async def health(self):
        return True


@pytest.fixture()
def store():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    local_store = LocalStore(bind=engine)
    local_store.init_schema()
    yield local_store
    engine.dispose()


@pytest.fixture()
def api():
    return FakeRemoteAPI()


@pytest.fixture()
def connectivity():
    return ConnectivityMonitor(initial_online=True)


@pytest.fixture()
def notifier(store):
    return Notifier(store)
