"""
Editor change events.

Synchronous pub/sub consumed by renderers: every successful command emits
its specific event and then ``update``. A failing handler is logged and
skipped; it never rolls back the command that triggered it.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EditorEventType(StrEnum):
    NODE_CREATE = "node_create"
    NODE_DELETE = "node_delete"
    NODE_UPDATE = "node_update"
    EDGE_CREATE = "edge_create"
    EDGE_DELETE = "edge_delete"
    EDGE_UPDATE = "edge_update"
    SELECTION_UPDATE = "selection_update"
    UPDATE = "update"


@dataclass
class EditorEvent:
    type: EditorEventType
    payload: dict[str, Any] = field(default_factory=dict)


EditorEventHandler = Callable[[EditorEvent], None]


class EditorEvents:
    """
    Handler lists keyed by event type.

    Example:
        events = EditorEvents()
        unsubscribe = events.on(EditorEventType.NODE_CREATE, lambda e: print(e.payload))
        ...
        unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: dict[EditorEventType, list[EditorEventHandler]] = {}

    def on(self, event_type: EditorEventType, handler: EditorEventHandler) -> Callable[[], None]:
        self._handlers.setdefault(event_type, []).append(handler)
        return lambda: self.off(event_type, handler)

    def off(self, event_type: EditorEventType, handler: EditorEventHandler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def emit(self, event_type: EditorEventType, **payload: Any) -> None:
        event = EditorEvent(type=event_type, payload=payload)
        for handler in list(self._handlers.get(event_type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Editor event handler error for {event_type}: {e}")

    def handler_count(self, event_type: EditorEventType) -> int:
        return len(self._handlers.get(event_type, []))
