"""State-change notifications for UI collaborators."""

from collections import defaultdict
from typing import Callable

from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)

ACTIVE_CONNECTION_CHANGED = "active_connection_changed"
QUERY_MODE_CHANGED = "query_mode_changed"
QUERY_STARTED = "query_started"
QUERY_FINISHED = "query_finished"
QUERY_ABORTED = "query_aborted"
CONFIGS_CHANGED = "configs_changed"
LIMIT_QUERY_CHANGED = "limit_query_changed"

EVENTS = (
    ACTIVE_CONNECTION_CHANGED,
    QUERY_MODE_CHANGED,
    QUERY_STARTED,
    QUERY_FINISHED,
    QUERY_ABORTED,
    CONFIGS_CHANGED,
    LIMIT_QUERY_CHANGED,
)


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Callable]] = defaultdict(list)

    def subscribe(self, event: str, handler: Callable) -> Callable[[], None]:
        """Register handler(**payload) for event. Returns an unsubscribe function."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

        def unsubscribe():
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, **payload):
        for handler in list(self._handlers[event]):
            try:
                handler(**payload)
            except Exception:
                logger.exception("Handler for %s failed", event)

    def clear(self):
        self._handlers.clear()
