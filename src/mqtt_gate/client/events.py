"""
Structured client events.

The ConnectionManager reports what it does through `ClientEvent` records so
a UI, a debug panel, or a test can observe it without reaching into its state.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STATE_CHANGED = "state_changed"
    STATUS = "status"
    ERROR = "error"
    RECONNECT_REQUESTED = "reconnect_requested"
    COMMAND_ISSUED = "command_issued"
    COMMAND_RESOLVED = "command_resolved"
    COMMAND_EXPIRED = "command_expired"
    HEARTBEAT = "heartbeat"
    LIVENESS_CHANGED = "liveness_changed"
    PRESENCE = "presence"


@dataclass(frozen=True)
class ClientEvent:
    type: EventType
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    timestamp: float = field(default_factory=time.time)


EventListener = Callable[[ClientEvent], None]


class EventEmitter:
    """Fans events out to listeners. A failing listener never breaks the emitter."""

    def __init__(self):
        self._listeners: List[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: EventType, error: Optional[BaseException] = None, **detail) -> ClientEvent:
        event = ClientEvent(type=event_type, detail=detail, error=error)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener {listener!r} failed on {event_type.value}")
        return event
