"""
Event Router
============

Dispatches parser events to callbacks keyed by dotted field path, plus an
optional wildcard callback that sees every event.
"""

from typing import Callable, Dict, Iterable, Optional

from stageflow.streaming.parser import StreamEvent
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

WILDCARD = "*"

EventCallback = Callable[[StreamEvent], None]


class EventRouter:
    """
    Path-addressed fan-out for StreamEvents.

    Callbacks for one path run in event order because dispatch is synchronous.
    The exact-path callback runs before the wildcard callback.
    """

    def __init__(self):
        self._callbacks: Dict[str, EventCallback] = {}

    def register(self, path: str, callback: EventCallback) -> None:
        """
        Register the callback for a dotted path or ``WILDCARD``.

        A later registration for the same path replaces the earlier one.
        """
        if path in self._callbacks:
            logger.debug("router.callback_replaced", extra={"path": path})
        self._callbacks[path] = callback

    def unregister(self, path: str) -> Optional[EventCallback]:
        return self._callbacks.pop(path, None)

    def dispatch(self, event: StreamEvent) -> int:
        """
        Deliver one event.

        Returns:
            Number of callbacks invoked
        """
        invoked = 0
        exact = self._callbacks.get(event.dotted_path)
        if exact is not None:
            exact(event)
            invoked += 1
        wildcard = self._callbacks.get(WILDCARD)
        if wildcard is not None:
            wildcard(event)
            invoked += 1
        return invoked

    def route(self, events: Iterable[StreamEvent]) -> int:
        """Deliver events in order; returns total callbacks invoked."""
        return sum(self.dispatch(event) for event in events)

    @property
    def paths(self):
        return sorted(self._callbacks)
