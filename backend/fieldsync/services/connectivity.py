"""
Connectivity state for the field device.
The UI reports browser online/offline transitions; optionally the agent also
probes the BCA API health endpoint on an interval.
"""
import asyncio
import logging
from typing import Callable, Optional

from .events import EventChannel
from .remote_api import RemoteAPIClient

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Injectable connectivity provider. Emits ``True``/``False`` on transitions only."""

    def __init__(self, initial_online: bool = True, api: Optional[RemoteAPIClient] = None):
        self._online = initial_online
        self.api = api
        self.transitions: EventChannel[bool] = EventChannel("connectivity")

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self.transitions.subscribe(listener)

    def set_online(self, online: bool) -> bool:
        """Update the state. Returns True when this was a transition."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self.transitions.emit(online)
        return True

    async def probe(self) -> bool:
        if self.api is None:
            return self._online
        self.set_online(await self.api.health())
        return self._online

    async def run(self, interval: float) -> None:
        """Probe forever; cancelled by the coordinator on shutdown."""
        while True:
            await self.probe()
            await asyncio.sleep(interval)
