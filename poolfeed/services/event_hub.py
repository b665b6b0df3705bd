# poolfeed/services/event_hub.py

"""In-process, per-user publish/subscribe.

Delivery is live only: an event reaches whoever is subscribed when it is
published. Nothing is queued or replayed; the listing store stays the
source of truth.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("poolfeed.events")

Event = dict[str, Any]
EventHandler = Callable[[Event], None]


class EventHub:
    """Fan events out synchronously to a user's current subscribers."""

    def __init__(self) -> None:
        self._subscribers: defaultdict[str, list[EventHandler]] = (
            defaultdict(list)
        )
        self._lock = threading.Lock()

    def subscribe(
        self, user_id: str, handler: EventHandler,
    ) -> Callable[[], None]:
        """Register *handler* for *user_id*; returns an unsubscribe callable."""
        with self._lock:
            self._subscribers[user_id].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(user_id)
                if handlers and handler in handlers:
                    handlers.remove(handler)
                    if not handlers:
                        del self._subscribers[user_id]

        return unsubscribe

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))

    def publish(self, user_id: str, event: Event) -> int:
        """Deliver *event* to every current subscriber of *user_id*.

        A failing handler is logged and skipped. Returns the number of
        handlers that received the event.
        """
        with self._lock:
            handlers = list(self._subscribers.get(user_id, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.error(
                    "Event handler failed for user %s (event %s)",
                    user_id,
                    event.get("type"),
                    exc_info=True,
                )
        return delivered
