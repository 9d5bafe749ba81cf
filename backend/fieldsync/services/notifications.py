"""
User-facing notifications for offline capture and sync.

Every notification lands in the in-app toast feed. System notifications
(the device notification centre) additionally require the user's permission
and matching preferences; without them the feature is simply off.
"""
import logging
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from ..core.config import settings
from ..models.base import utcnow
from .local_store import LocalStore, StorageError
from .sync_engine import SyncEvent, SyncEventType

logger = logging.getLogger(__name__)

PREFERENCE_KEY = "notification_preference"


class NotificationPermission(str, Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"
    UNSUPPORTED = "unsupported"


class NotificationKind(str, Enum):
    GENERAL = "general"
    SYNC = "sync"
    OFFLINE = "offline"


@dataclass
class NotificationPreference:
    enabled: bool = settings.NOTIFICATIONS_ENABLED
    sync_complete: bool = True
    offline_warning: bool = True


@dataclass
class Notification:
    level: str  # info, success, warning, error
    title: str
    message: str
    kind: str = NotificationKind.GENERAL.value
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


Sink = Callable[[Notification], None]


class Notifier:
    def __init__(
        self,
        store: Optional[LocalStore] = None,
        supported: bool = True,
        max_toasts: int = 100,
    ):
        self.store = store
        self._permission = (
            NotificationPermission.DEFAULT if supported else NotificationPermission.UNSUPPORTED
        )
        self._preference: Optional[NotificationPreference] = None
        self._toasts: Deque[Notification] = deque(maxlen=max_toasts)
        self._sinks: List[Sink] = []

    # ------------------------------------------------------------------
    # Permission & preferences
    # ------------------------------------------------------------------

    @property
    def permission(self) -> NotificationPermission:
        return self._permission

    def request_permission(self, granted: bool) -> NotificationPermission:
        """Record the user's answer to the permission prompt."""
        if self._permission is NotificationPermission.UNSUPPORTED:
            return self._permission
        self._permission = (
            NotificationPermission.GRANTED if granted else NotificationPermission.DENIED
        )
        return self._permission

    @property
    def preference(self) -> NotificationPreference:
        if self._preference is None:
            self._preference = self._load_preference()
        return self._preference

    def _load_preference(self) -> NotificationPreference:
        if self.store is None:
            return NotificationPreference()
        try:
            stored = self.store.get_meta(PREFERENCE_KEY) or {}
        except StorageError as exc:
            logger.warning("Could not read notification preference: %s", exc)
            return NotificationPreference()
        known = {k: v for k, v in stored.items() if k in NotificationPreference.__dataclass_fields__}
        return NotificationPreference(**known)

    def update_preference(self, **changes) -> NotificationPreference:
        preference = self.preference
        for key, value in changes.items():
            if value is not None and hasattr(preference, key):
                setattr(preference, key, bool(value))
        if self.store is not None:
            try:
                self.store.set_meta(PREFERENCE_KEY, asdict(preference))
            except StorageError as exc:
                logger.warning("Could not store notification preference: %s", exc)
        return preference

    def add_sink(self, sink: Sink) -> Callable[[], None]:
        """Register a system notification sink (desktop, push, ...)."""
        self._sinks.append(sink)

        def remove() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return remove

    def _system_allowed(self, kind: str) -> bool:
        if self._permission is not NotificationPermission.GRANTED:
            return False
        preference = self.preference
        if not preference.enabled:
            return False
        if kind == NotificationKind.SYNC.value:
            return preference.sync_complete
        if kind == NotificationKind.OFFLINE.value:
            return preference.offline_warning
        return True

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def notify(
        self,
        level: str,
        title: str,
        message: str,
        kind: NotificationKind = NotificationKind.GENERAL,
    ) -> Notification:
        notification = Notification(
            level=level, title=title, message=message, kind=NotificationKind(kind).value
        )
        self._toasts.append(notification)
        logger.info("[%s] %s: %s", level, title, message)

        if self._system_allowed(notification.kind):
            for sink in list(self._sinks):
                try:
                    sink(notification)
                except Exception as exc:
                    logger.warning("Notification sink %r failed: %s", sink, exc)
        return notification

    def info(self, title: str, message: str, kind=NotificationKind.GENERAL) -> Notification:
        return self.notify("info", title, message, kind)

    def success(self, title: str, message: str, kind=NotificationKind.GENERAL) -> Notification:
        return self.notify("success", title, message, kind)

    def warning(self, title: str, message: str, kind=NotificationKind.GENERAL) -> Notification:
        return self.notify("warning", title, message, kind)

    def error(self, title: str, message: str, kind=NotificationKind.GENERAL) -> Notification:
        return self.notify("error", title, message, kind)

    def recent(self) -> List[Notification]:
        return list(self._toasts)

    def drain(self) -> List[Notification]:
        """Hand pending toasts to the UI and forget them."""
        toasts = list(self._toasts)
        self._toasts.clear()
        return toasts

    # ------------------------------------------------------------------
    # Event bridges
    # ------------------------------------------------------------------

    def handle_sync_event(self, event: SyncEvent) -> None:
        if event.type is SyncEventType.ERROR:
            self.error("Sync failed", event.error or "Unknown error", NotificationKind.SYNC)
            return
        if event.type is not SyncEventType.COMPLETE or event.result is None:
            return

        result = event.result
        if result.synced == 0 and result.failed == 0:
            return
        if result.failed == 0 and not result.aborted:
            self.success(
                "Sync complete",
                f"{result.synced} item{'s' if result.synced != 1 else ''} synced",
                NotificationKind.SYNC,
            )
        elif result.failed == 0:
            self.warning(
                "Sync stopped",
                f"Sync stopped after {result.synced} item{'s' if result.synced != 1 else ''} synced",
                NotificationKind.SYNC,
            )
        elif result.synced == 0:
            self.error(
                "Sync failed",
                f"{result.failed} item{'s' if result.failed != 1 else ''} could not be synced",
                NotificationKind.SYNC,
            )
        else:
            self.warning(
                "Partial sync",
                f"{result.synced} synced, {result.failed} failed",
                NotificationKind.SYNC,
            )

    def handle_connectivity(self, online: bool) -> None:
        if online:
            self.info("Back online", "Syncing offline data...", NotificationKind.OFFLINE)
        else:
            self.warning(
                "You are offline",
                "Changes will be saved on this device and synced later.",
                NotificationKind.OFFLINE,
            )
