"""In-process event bus.

Components publish lifecycle events (``insight.promoted``, ``task.created``)
and interested parties subscribe. Handler failures are logged and never
propagate back into the publisher.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger("continuum.events")

Handler = Callable[[dict[str, Any]], None]

INSIGHT_PROMOTED = "insight.promoted"
TASK_CREATED = "task.created"


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: Handler) -> None:
        with self._lock:
            if handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

    def handler_count(self, event_type: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, []))

    def emit(self, event_type: str, payload: dict[str, Any]) -> int:
        """Deliver payload to every handler. Returns the number that succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(event_type, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.error("Handler for %s failed: %s", event_type, e, exc_info=True)
        return delivered
