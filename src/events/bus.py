"""
In-process event bus.

A single EventBus instance is built at startup (see mentionable.main and
server.app.create_app) and handed to every component that emits or
subscribes. Subscribers for one event run sequentially in registration
order; an exception raised by one subscriber is logged and does not stop
delivery to the others.

Usage:
    >>> bus = EventBus()
    >>> unsubscribe = bus.on(CoreEvents.POST_PUBLISHED, lambda payload: print(payload))
    >>> bus.emit(CoreEvents.POST_PUBLISHED, {"postId": "abc"})
    >>> unsubscribe()
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[Optional[Dict[str, Any]]], Any]


class CoreEvents:
    """Event names shared with the rest of the platform."""

    POST_PUBLISHED = "content.post.published"
    POST_UPDATED = "content.post.updated"
    POST_DELETED = "content.post.deleted"
    WEBMENTION_RECEIVED = "webmentions.received"
    WEBMENTION_SENT = "webmentions.sent"


class EventBus:
    """Minimal publish/subscribe dispatcher."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for an event.

        Returns:
            A callable that removes the handler again.
        """
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Deliver payload to every handler registered for event.

        Returns:
            Number of handlers that completed without raising.
        """
        with self._lock:
            handlers = list(self._handlers.get(event, []))

        if not handlers:
            logger.debug(f"No subscribers for event {event}")
            return 0

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Event subscriber failed: event={event}, error={e}", exc_info=True)
        return delivered

    def subscriber_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))
