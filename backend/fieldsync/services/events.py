"""Typed publish/subscribe channel used for sync and connectivity events."""
import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]


class EventChannel(Generic[T]):
    """
    Fan-out of events to subscribed listeners.

    ``subscribe`` returns a callable that removes the listener again. A listener
    that raises is logged and skipped; it never breaks the publisher.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning("%s listener %r failed: %s", self.name, listener, exc)

    def __len__(self) -> int:
        return len(self._listeners)
