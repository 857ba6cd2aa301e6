"""
Event Bus - async pub/sub for workflow execution events.

Lets hosts observe a run without wiring callbacks through every layer:
- Run lifecycle (started / completed / failed / cancelled)
- Node dispatch, retries and edge traversal
- Streamed model output, tool calls, HITL waits and compactions
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_RETRY = "node_retry"
    EDGE_TRAVERSED = "edge_traversed"

    # Fan-out
    BRANCH_STARTED = "branch_started"
    BRANCH_COMPLETED = "branch_completed"

    # LLM streaming
    LLM_TEXT_DELTA = "llm_text_delta"
    LLM_REASONING_DELTA = "llm_reasoning_delta"

    # Tool lifecycle
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"

    # Human-in-the-loop
    HITL_REQUESTED = "hitl_requested"
    HITL_RESOLVED = "hitl_resolved"

    # Context management
    CONTEXT_COMPACTED = "context_compacted"

    CUSTOM = "custom"


@dataclass
class ExecutionEvent:
    """An event emitted during a workflow run."""

    type: EventType
    run_id: str
    node_id: str | None = None
    branch_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "branch_id": self.branch_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None
    filter_node: str | None = None


class EventBus:
    """
    Pub/sub bus for execution events.

    Example:
        bus = EventBus()

        async def on_token(event: ExecutionEvent):
            print(event.data["content"], end="")

        bus.subscribe([EventType.LLM_TEXT_DELTA], on_token)
        executor = WorkflowExecutor(provider, registry, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[ExecutionEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: ExecutionEvent) -> None:
        """Publish an event to all matching subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            s.handler for s in self._subscriptions.values() if self._matches(s, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: ExecutionEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: ExecutionEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    async def emit(
        self,
        event_type: EventType,
        run_id: str,
        node_id: str | None = None,
        branch_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(
            ExecutionEvent(
                type=event_type, run_id=run_id, node_id=node_id, branch_id=branch_id, data=data
            )
        )

    # === CONVENIENCE PUBLISHERS ===

    async def emit_execution_started(self, run_id: str, input: str) -> None:
        await self.emit(EventType.EXECUTION_STARTED, run_id, input=input)

    async def emit_execution_completed(self, run_id: str, output: str, total_tokens: int) -> None:
        await self.emit(EventType.EXECUTION_COMPLETED, run_id, output=output, total_tokens=total_tokens)

    async def emit_execution_failed(self, run_id: str, error: str, node_id: str | None = None) -> None:
        await self.emit(EventType.EXECUTION_FAILED, run_id, node_id=node_id, error=error)

    async def emit_execution_cancelled(self, run_id: str) -> None:
        await self.emit(EventType.EXECUTION_CANCELLED, run_id)

    async def emit_node_started(
        self, run_id: str, node_id: str, node_type: str, branch_id: str | None = None
    ) -> None:
        await self.emit(
            EventType.NODE_STARTED, run_id, node_id=node_id, branch_id=branch_id, node_type=node_type
        )

    async def emit_node_completed(
        self,
        run_id: str,
        node_id: str,
        output: str,
        duration_ms: int,
        branch_id: str | None = None,
    ) -> None:
        await self.emit(
            EventType.NODE_COMPLETED,
            run_id,
            node_id=node_id,
            branch_id=branch_id,
            output=output,
            duration_ms=duration_ms,
        )

    async def emit_node_failed(
        self, run_id: str, node_id: str, error: str, branch_id: str | None = None
    ) -> None:
        await self.emit(EventType.NODE_FAILED, run_id, node_id=node_id, branch_id=branch_id, error=error)

    async def emit_node_retry(
        self, run_id: str, node_id: str, retry_count: int, max_retries: int, error: str
    ) -> None:
        await self.emit(
            EventType.NODE_RETRY,
            run_id,
            node_id=node_id,
            retry_count=retry_count,
            max_retries=max_retries,
            error=error,
        )

    async def emit_edge_traversed(
        self, run_id: str, source_node: str, target_node: str, handle: str
    ) -> None:
        await self.emit(
            EventType.EDGE_TRAVERSED,
            run_id,
            node_id=source_node,
            target_node=target_node,
            handle=handle,
        )

    async def emit_llm_text_delta(
        self, run_id: str, node_id: str, content: str, snapshot: str, branch_id: str | None = None
    ) -> None:
        await self.emit(
            EventType.LLM_TEXT_DELTA,
            run_id,
            node_id=node_id,
            branch_id=branch_id,
            content=content,
            snapshot=snapshot,
        )

    async def emit_llm_reasoning_delta(
        self, run_id: str, node_id: str, content: str, branch_id: str | None = None
    ) -> None:
        await self.emit(
            EventType.LLM_REASONING_DELTA, run_id, node_id=node_id, branch_id=branch_id, content=content
        )

    async def emit_tool_call_started(
        self, run_id: str, node_id: str, tool_use_id: str, tool_name: str, tool_input: dict
    ) -> None:
        await self.emit(
            EventType.TOOL_CALL_STARTED,
            run_id,
            node_id=node_id,
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            tool_input=tool_input,
        )

    async def emit_tool_call_completed(
        self, run_id: str, node_id: str, tool_use_id: str, tool_name: str, result: str, is_error: bool
    ) -> None:
        await self.emit(
            EventType.TOOL_CALL_COMPLETED,
            run_id,
            node_id=node_id,
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            result=result,
            is_error=is_error,
        )

    # === QUERIES ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionEvent]:
        """Event history, most recent first."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionEvent | None:
        """Wait for a specific event; None on timeout."""
        result: ExecutionEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: ExecutionEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe([event_type], handler, filter_run=run_id, filter_node=node_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
