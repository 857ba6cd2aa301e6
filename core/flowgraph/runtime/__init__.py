"""Runtime plumbing shared by executors and hosts."""

from flowgraph.runtime.event_bus import EventBus, EventType, ExecutionEvent

__all__ = ["EventBus", "EventType", "ExecutionEvent"]
