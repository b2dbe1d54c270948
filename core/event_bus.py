"""In-process event bus for agent lifecycle events."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("mta.events")

EventHandler = Callable[[dict[str, Any]], None]

TURN_CLASSIFIED = "turn_classified"
PLAN_BUILT = "plan_built"
CONFIRMATION_REQUESTED = "confirmation_requested"
STEP_COMPLETED = "step_completed"
EXECUTION_FINISHED = "execution_finished"
MEMORY_WRITTEN = "memory_written"


class EventBus:
    """Dispatches events to subscribers by event name.

    A failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register a callback for an event; ``"*"`` receives every event."""
        with self._lock:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers.get(event_name, []):
                self._handlers[event_name].remove(handler)

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Emit an event to all subscribers."""
        with self._lock:
            handlers = list(self._handlers.get(event_name, [])) + list(self._handlers.get("*", []))
        event = {"event": event_name, **payload}
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler for %s failed", event_name)
