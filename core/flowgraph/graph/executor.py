"""
Workflow Executor - runs a workflow snapshot against an LLM provider.

The executor:
1. Takes a WorkflowSnapshot (copied once; later edits never leak into a run)
2. Locates the single start node and runs validation as a gate
3. Walks the graph, dispatching each node to its registered extension
4. Fans out concurrently when more than one edge matches, then merges
5. Handles retries, error routing, human review, cancellation and streaming
6. Returns an ExecutionResult with a per-node trace
"""

import asyncio
import dataclasses
import inspect
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from flowgraph.config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_TOOL_ITERATIONS,
    DEFAULT_MODEL,
    RuntimeConfig,
)
from flowgraph.graph.conversation import CompactionConfig, Conversation, Message, TokenCounter
from flowgraph.graph.errors import (
    AmbiguousStartNodeError,
    ExecutionCancelledError,
    ExecutionError,
    HITLTimeoutError,
    InvalidWorkflowError,
    MaxStepsExceededError,
    NodeExecutionError,
    NoStartNodeError,
    ProviderError,
    UnknownNodeTypeError,
    classify_error,
    is_transient,
)
from flowgraph.graph.extension import ExtensionRegistry, NodeContext, NodeResult
from flowgraph.graph.hitl import HITLAction, HITLCallback, HITLConfig, HITLRequest, HITLResponse, build_request
from flowgraph.graph.models import (
    ERROR_HANDLE,
    REJECTED_HANDLE,
    ErrorMode,
    NodeData,
    RetryConfig,
    WorkflowEdge,
    WorkflowNode,
    WorkflowSnapshot,
)
from flowgraph.graph.services import NodeServices
from flowgraph.graph.subflow import SubflowRegistry
from flowgraph.graph.validator import START_NODE_TYPE, validate_workflow
from flowgraph.llm.provider import LLMProvider, TokenUsage, ToolResult, ToolUse
from flowgraph.observability import set_trace_context
from flowgraph.runner.tool_registry import ToolRegistry
from flowgraph.runtime.event_bus import EventBus, EventType
from flowgraph.storage.memory import InMemoryMemoryAdapter, MemoryAdapter

logger = logging.getLogger(__name__)


class ExecutionState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_HUMAN_INPUT = "awaiting_human_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Attachment:
    """Non-text input attached to the run's user turn."""

    type: str  # "image" | "audio" | "file"
    url: str | None = None
    content: str | None = None  # base64 payload when no url
    mime_type: str | None = None
    name: str | None = None

    def resolve_url(self) -> str | None:
        if self.url:
            return self.url
        if self.content and self.mime_type:
            return f"data:{self.mime_type};base64,{self.content}"
        return None


ToolHandler = Callable[[ToolUse], Awaitable[ToolResult | str] | ToolResult | str]


@dataclass
class LoopState:
    """What a custom while-loop evaluator sees."""

    node_id: str
    iteration: int
    outputs: list[str]
    last_output: str | None
    input: str


CustomEvaluator = Callable[[LoopState], Awaitable[bool] | bool]


@dataclass
class ExecutionCallbacks:
    """
    Optional hooks, sync or async. Exceptions raised by a hook are logged
    and never affect the run.
    """

    on_node_start: Callable[[str, str | None], Any] | None = None  # node_id, branch_id
    on_node_finish: Callable[["NodeTrace"], Any] | None = None
    on_node_error: Callable[[str, ExecutionError, str | None], Any] | None = None
    on_token: Callable[[str, str, str | None], Any] | None = None  # node_id, chunk, branch_id
    on_reasoning: Callable[[str, str, str | None], Any] | None = None
    on_route_selected: Callable[[str, str], Any] | None = None  # node_id, route handle
    on_tool_event: Callable[[str, ToolUse, ToolResult | None], Any] | None = None
    on_state_change: Callable[[ExecutionState], Any] | None = None


@dataclass
class ExecutionOptions:
    """Per-executor run settings."""

    default_model: str = DEFAULT_MODEL
    temperature: float | None = None
    max_tokens: int | None = None

    # Retries (transient failures only)
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    max_steps: int = 500
    fail_fast: bool = False
    stream: bool = True

    compaction: CompactionConfig | None = None
    token_counter: TokenCounter | None = None

    tools: ToolRegistry | None = None
    on_tool_call: ToolHandler | None = None
    on_hitl_request: HITLCallback | None = None
    callbacks: ExecutionCallbacks = field(default_factory=ExecutionCallbacks)

    attachments: list[Attachment] = field(default_factory=list)
    strict_modalities: bool = False

    custom_evaluators: dict[str, CustomEvaluator] = field(default_factory=dict)
    subflows: SubflowRegistry | None = None
    max_subflow_depth: int = 10

    # Memory nodes; the executor keeps its own in-memory adapter when unset
    memory: MemoryAdapter | None = None
    session_id: str | None = None

    @classmethod
    def from_config(cls, config: RuntimeConfig, **overrides: Any) -> "ExecutionOptions":
        values: dict[str, Any] = {
            "default_model": config.model,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "max_retries": config.max_retries,
            "max_tool_iterations": config.max_tool_iterations,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class NodeTrace:
    """What happened at one node dispatch."""

    node_id: str
    node_type: str
    label: str
    input: str = ""
    branch_id: str | None = None
    status: NodeStatus = NodeStatus.RUNNING
    output: str | None = None
    next_handles: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    retries: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "label": self.label,
            "branch_id": self.branch_id,
            "status": self.status.value,
            "output": self.output,
            "next_handles": self.next_handles,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "usage": self.usage.to_dict(),
            "tool_calls": self.tool_calls,
            "error": self.error,
            "retries": self.retries,
            "metadata": self.metadata,
        }


@dataclass
class ExecutionResult:
    """Result of executing a workflow."""

    run_id: str
    state: ExecutionState
    output: str = ""
    trace: list[NodeTrace] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: ExecutionError | None = None
    outputs: dict[str, str] = field(default_factory=dict)  # node_id -> last output
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.state == ExecutionState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.state == ExecutionState.CANCELLED

    @property
    def path(self) -> list[str]:
        return [t.node_id for t in self.trace]

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "output": self.output,
            "trace": [t.to_dict() for t in self.trace],
            "usage": self.usage.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ExecutionContext:
    """Per-run state. Created fresh by execute() and dropped when it returns."""

    run_id: str
    graph: WorkflowSnapshot
    options: ExecutionOptions
    conversation: Conversation
    cancel_event: asyncio.Event
    outputs: dict[str, str] = field(default_factory=dict)
    visited: set[str] = field(default_factory=set)
    usage: TokenUsage = field(default_factory=TokenUsage)
    trace: list[NodeTrace] = field(default_factory=list)
    pending_hitl: dict[str, HITLRequest] = field(default_factory=dict)
    steps: int = 0
    depth: int = 0
    scope: str | None = None  # branch-id prefix for nested subflow runs

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def hitl_request(self) -> HITLRequest | None:
        return next(iter(self.pending_hitl.values()), None)

    def child(self, graph: WorkflowSnapshot, conversation: Conversation, scope: str) -> "ExecutionContext":
        """Context for a nested subflow run; shares trace, usage and cancellation."""
        return ExecutionContext(
            run_id=self.run_id,
            graph=graph,
            options=self.options,
            conversation=conversation,
            cancel_event=self.cancel_event,
            usage=self.usage,
            trace=self.trace,
            pending_hitl=self.pending_hitl,
            depth=self.depth + 1,
            scope=scope,
        )


@dataclass
class BranchOutcome:
    branch_id: str
    label: str
    target: str
    output: str = ""
    error: ExecutionError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke an optional sync/async hook; its failures are logged only."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Callback {getattr(callback, '__name__', callback)!r} failed: {e}")


class WorkflowExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = WorkflowExecutor(
            provider=provider,
            registry=ExtensionRegistry.with_builtins(),
            options=ExecutionOptions(default_model="openai/gpt-4o-mini"),
        )

        result = await executor.execute(editor.to_snapshot(), "Summarize this ticket")
        if result.success:
            print(result.output)
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ExtensionRegistry | None = None,
        options: ExecutionOptions | None = None,
        event_bus: EventBus | None = None,
    ):
        self.provider = provider
        self.registry = registry or ExtensionRegistry.with_builtins()
        self.options = options or ExecutionOptions()
        self.memory = self.options.memory or InMemoryMemoryAdapter()
        self.logger = logger
        self._event_bus = event_bus
        self._state = ExecutionState.IDLE
        self._active: ExecutionContext | None = None

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def event_bus(self) -> EventBus | None:
        return self._event_bus

    @property
    def hitl_request(self) -> HITLRequest | None:
        """The outstanding human-review request of the active run, if any."""
        return self._active.hitl_request if self._active else None

    def cancel(self) -> bool:
        """
        Request cooperative cancellation of the active run.

        No new node is dispatched after this; in-flight handlers stop at their
        next cancellation check. Returns False when nothing is running.
        """
        if self._active is None:
            return False
        self._active.cancel_event.set()
        self.logger.info("⏹ Cancellation requested")
        return True

    # === RUN ===

    async def execute(
        self,
        workflow: WorkflowSnapshot | dict[str, Any],
        input: str,
        history: list[dict[str, Any]] | None = None,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """
        Run a workflow to completion, failure or cancellation.

        Args:
            workflow: Snapshot to run (copied; the caller may keep editing)
            input: User input handed to the start node
            history: Prior chat messages to seed the conversation with
            options: Overrides the executor-level options for this run

        Returns:
            ExecutionResult; errors are carried in ``result.error``, not raised
        """
        if self._active is not None:
            raise RuntimeError("WorkflowExecutor is already running a workflow")

        if isinstance(workflow, dict):
            graph = WorkflowSnapshot.model_validate(workflow)
        else:
            graph = workflow.model_copy(deep=True)

        ctx = ExecutionContext(
            run_id=uuid.uuid4().hex,
            graph=graph,
            options=options or self.options,
            conversation=Conversation.from_history(history),
            cancel_event=asyncio.Event(),
        )
        self._active = ctx
        set_trace_context(run_id=ctx.run_id)
        started = time.monotonic()

        self.logger.info(f"🚀 Starting workflow: {graph.meta.name}")
        await self._set_state(ctx, ExecutionState.RUNNING)
        if self._event_bus:
            await self._event_bus.emit_execution_started(ctx.run_id, input)

        result = ExecutionResult(run_id=ctx.run_id, state=ExecutionState.RUNNING, trace=ctx.trace, usage=ctx.usage, outputs=ctx.outputs)
        try:
            start_node = self._find_start_node(graph)
            self._check_workflow(graph)

            result.output = await self._walk(ctx, start_node.id, input, ctx.conversation)
            result.state = ExecutionState.COMPLETED
            self.logger.info(
                f"✓ Workflow completed: {len(ctx.trace)} node(s), {ctx.usage.total_tokens} tokens"
            )
            if self._event_bus:
                await self._event_bus.emit_execution_completed(ctx.run_id, result.output, ctx.usage.total_tokens)

        except ExecutionCancelledError:
            result.state = ExecutionState.CANCELLED
            self.logger.info(f"⏹ Workflow cancelled after {len(ctx.trace)} node(s)")
            if self._event_bus:
                await self._event_bus.emit_execution_cancelled(ctx.run_id)

        except Exception as e:
            error = e if isinstance(e, ExecutionError) else NodeExecutionError(str(e))
            if error is not e:
                error.__cause__ = e
            error.trace = list(ctx.trace)
            result.error = error
            result.state = ExecutionState.FAILED
            self.logger.error(f"✗ Workflow failed: {error}")
            if self._event_bus:
                await self._event_bus.emit_execution_failed(ctx.run_id, str(error), error.node_id)

        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._active = None

        await self._set_state(ctx, result.state)
        return result

    def _find_start_node(self, graph: WorkflowSnapshot) -> WorkflowNode:
        starts = [n for n in graph.nodes if n.type == START_NODE_TYPE]
        if not starts:
            raise NoStartNodeError()
        if len(starts) > 1:
            raise AmbiguousStartNodeError([n.id for n in starts])
        return starts[0]

    def _check_workflow(self, graph: WorkflowSnapshot) -> None:
        """Validation gate; an unregistered node type is reported on its own."""
        validation = validate_workflow(graph.nodes, graph.edges, self.registry)
        for warning in validation.warnings:
            self.logger.warning(f"⚠ {warning.message}")
        if validation.is_valid:
            return
        for node in graph.nodes:
            if node.type not in self.registry:
                raise UnknownNodeTypeError(node.type, node.id)
        raise InvalidWorkflowError(validation)

    async def _set_state(self, ctx: ExecutionContext, state: ExecutionState) -> None:
        if self._state == state:
            return
        self._state = state
        await notify(ctx.options.callbacks.on_state_change, state)

    def _check_cancelled(self, ctx: ExecutionContext, node_id: str | None = None) -> None:
        if ctx.cancelled:
            raise ExecutionCancelledError(node_id)

    # === TRAVERSAL ===

    async def _walk(
        self,
        ctx: ExecutionContext,
        node_id: str,
        node_input: str,
        conversation: Conversation,
        branch_id: str | None = None,
        stop_at: frozenset[str] = frozenset(),
        overrides: dict[str, Any] | None = None,
    ) -> str:
        """
        Follow edges from ``node_id`` until a dead end or a ``stop_at`` node.

        Returns the last output produced on the way.
        """
        current_id: str | None = node_id
        current_input = node_input
        last_output = node_input

        while current_id is not None and current_id not in stop_at:
            self._check_cancelled(ctx, current_id)
            node = ctx.graph.get_node(current_id)
            if node is None:
                raise NodeExecutionError(f"Edge points at missing node '{current_id}'", current_id)

            result, trace = await self._execute_node(ctx, node, current_input, conversation, branch_id, overrides)
            overrides = None
            last_output = result.output

            edges = self._select_edges(ctx.graph, node.id, result.next_handles)
            for edge in edges:
                if self._event_bus:
                    await self._event_bus.emit_edge_traversed(ctx.run_id, node.id, edge.target, edge.handle)

            if not edges:
                break
            if len(edges) == 1:
                current_id, current_input = edges[0].target, result.output
                continue

            merged, current_id = await self._fan_out(
                ctx, node, result, trace, edges, conversation, branch_id, stop_at
            )
            last_output = current_input = merged

        return last_output

    @staticmethod
    def _select_edges(graph: WorkflowSnapshot, node_id: str, handles: list[str]) -> list[WorkflowEdge]:
        wanted = set(handles)
        return [e for e in graph.edges if e.source == node_id and e.handle in wanted]

    # === NODE DISPATCH ===

    async def _execute_node(
        self,
        ctx: ExecutionContext,
        node: WorkflowNode,
        node_input: str,
        conversation: Conversation,
        branch_id: str | None,
        overrides: dict[str, Any] | None = None,
    ) -> tuple[NodeResult, NodeTrace]:
        ctx.steps += 1
        if ctx.steps > ctx.options.max_steps:
            raise MaxStepsExceededError(ctx.options.max_steps, node.id)

        extension = self.registry.get(node.type)
        if extension is None:
            raise UnknownNodeTypeError(node.type, node.id)
        try:
            data = extension.parse_data({**node.data, **(overrides or {})})
        except ValidationError as e:
            raise NodeExecutionError(f"Invalid data for node '{node.label}': {e}", node.id) from e

        trace = NodeTrace(
            node_id=node.id,
            node_type=node.type,
            label=node.label,
            input=node_input,
            branch_id=branch_id,
        )
        ctx.trace.append(trace)
        ctx.visited.add(node.id)
        set_trace_context(node_id=node.id, branch_id=branch_id)
        started = time.monotonic()

        self.logger.info(f"▶ {node.label} ({node.type})")
        await notify(ctx.options.callbacks.on_node_start, node.id, branch_id)
        if self._event_bus:
            await self._event_bus.emit_node_started(ctx.run_id, node.id, node.type, branch_id)

        async def attempt() -> NodeResult:
            services = NodeServices(self, ctx, node, conversation, branch_id, trace)
            return await extension.execute(NodeContext(node, data, node_input, services, branch_id))

        try:
            result = await self._with_retry(ctx, node, data, trace, attempt)
            if data.hitl is not None and data.hitl.enabled:
                result = await self._await_human(ctx, node, data.hitl, result, node_input, branch_id)
        except ExecutionCancelledError:
            trace.status = NodeStatus.CANCELLED
            trace.duration_ms = int((time.monotonic() - started) * 1000)
            raise
        except ExecutionError as error:
            result = await self._handle_node_failure(ctx, node, data, error, trace, started, branch_id)
            return result, trace

        if result.message_role and result.output:
            conversation.add(Message(role=result.message_role, content=result.output, node_id=node.id))
        ctx.outputs[node.id] = result.output
        trace.status = NodeStatus.COMPLETED
        trace.output = result.output
        trace.next_handles = list(result.next_handles)
        trace.tool_calls.extend(c for c in result.tool_calls if c not in trace.tool_calls)
        trace.metadata.update(result.metadata)
        trace.duration_ms = int((time.monotonic() - started) * 1000)

        self.logger.info(f"   ✓ {node.label} finished in {trace.duration_ms}ms")
        await notify(ctx.options.callbacks.on_node_finish, trace)
        if self._event_bus:
            await self._event_bus.emit_node_completed(
                ctx.run_id, node.id, result.output, trace.duration_ms, branch_id
            )
        return result, trace

    def _retry_policy(self, ctx: ExecutionContext, data: NodeData) -> RetryConfig:
        if data.error_handling is not None and data.error_handling.retry is not None:
            return data.error_handling.retry
        return RetryConfig(
            max_retries=ctx.options.max_retries,
            base_delay=ctx.options.retry_base_delay,
            max_delay=ctx.options.retry_max_delay,
        )

    async def _with_retry(
        self,
        ctx: ExecutionContext,
        node: WorkflowNode,
        data: NodeData,
        trace: NodeTrace,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run ``call``; retry transient failures with exponential backoff."""
        policy = self._retry_policy(ctx, data)
        retry_count = 0
        while True:
            try:
                return await call()
            except ExecutionCancelledError:
                raise
            except Exception as e:
                error = self._as_execution_error(e, node.id)
                if not is_transient(e) or retry_count >= policy.max_retries:
                    if error is e:
                        raise
                    raise error from e

                retry_count += 1
                trace.retries += 1
                # Backoff formula: base * (2^(retry - 1)) -> 1s, 2s, 4s... capped
                delay = min(policy.base_delay * (2 ** (retry_count - 1)), policy.max_delay)
                self.logger.warning(
                    f"   ↻ {node.label}: {classify_error(e)} error, retrying "
                    f"({retry_count}/{policy.max_retries}) in {delay}s: {e}"
                )
                if self._event_bus:
                    await self._event_bus.emit_node_retry(
                        ctx.run_id, node.id, retry_count, policy.max_retries, str(e)
                    )
                await asyncio.sleep(delay)
                self._check_cancelled(ctx, node.id)

    @staticmethod
    def _as_execution_error(exc: Exception, node_id: str) -> ExecutionError:
        if isinstance(exc, ExecutionError):
            if exc.node_id is None:
                exc.node_id = node_id
            return exc
        if is_transient(exc):
            return ProviderError(str(exc), transient=True, node_id=node_id)
        return NodeExecutionError(str(exc), node_id)

    async def _handle_node_failure(
        self,
        ctx: ExecutionContext,
        node: WorkflowNode,
        data: NodeData,
        error: ExecutionError,
        trace: NodeTrace,
        started: float,
        branch_id: str | None,
    ) -> NodeResult:
        """Record a failed node, then route, continue or re-raise per its error mode."""
        trace.status = NodeStatus.FAILED
        trace.error = str(error)
        trace.duration_ms = int((time.monotonic() - started) * 1000)
        self.logger.error(f"   ✗ {node.label} failed: {error}")
        await notify(ctx.options.callbacks.on_node_error, node.id, error, branch_id)
        if self._event_bus:
            await self._event_bus.emit_node_failed(ctx.run_id, node.id, str(error), branch_id)

        mode = data.error_handling.mode if data.error_handling else ErrorMode.STOP
        if isinstance(error, HITLTimeoutError):
            mode = ErrorMode.STOP

        if mode == ErrorMode.BRANCH:
            if ctx.graph.get_outgoing_edges(node.id, ERROR_HANDLE):
                self.logger.info(f"   → Routing {node.label} to its error handle")
                trace.next_handles = [ERROR_HANDLE]
                return NodeResult(output=str(error), next_handles=[ERROR_HANDLE], message_role=None)
            self.logger.warning(f"   {node.label} routes errors to a branch but has no error edge")
        elif mode == ErrorMode.CONTINUE:
            self.logger.info(f"   → Continuing past failed node {node.label}")
            return NodeResult(output="", message_role=None)

        raise error

    # === HUMAN-IN-THE-LOOP ===

    async def _await_human(
        self,
        ctx: ExecutionContext,
        node: WorkflowNode,
        config: HITLConfig,
        result: NodeResult,
        node_input: str,
        branch_id: str | None,
    ) -> NodeResult:
        callback = ctx.options.on_hitl_request
        if callback is None:
            self.logger.warning(f"⚠ {node.label} requires review but no HITL callback is set; approving")
            return result

        request = build_request(config, node.id, node.label, result.output, node_input, branch_id)
        ctx.pending_hitl[request.id] = request
        await self._set_state(ctx, ExecutionState.AWAITING_HUMAN_INPUT)
        self.logger.info(f"⏸ Awaiting human {config.mode} for {node.label}")
        if self._event_bus:
            await self._event_bus.emit(
                EventType.HITL_REQUESTED, ctx.run_id, node_id=node.id, branch_id=branch_id, request=request.to_dict()
            )

        try:
            response = await asyncio.wait_for(callback(request), timeout=config.timeout)
        except TimeoutError:
            if config.default_action is None:
                raise HITLTimeoutError(config.timeout or 0, node.id) from None
            self.logger.warning(
                f"⚠ Review of {node.label} timed out; applying default action '{config.default_action}'"
            )
            response = HITLResponse(
                action=config.default_action, request_id=request.id, metadata={"timed_out": True}
            )
        finally:
            ctx.pending_hitl.pop(request.id, None)
            if not ctx.pending_hitl:
                await self._set_state(ctx, ExecutionState.RUNNING)

        if self._event_bus:
            await self._event_bus.emit(
                EventType.HITL_RESOLVED, ctx.run_id, node_id=node.id, branch_id=branch_id, response=response.to_dict()
            )
        self._check_cancelled(ctx, node.id)
        return self._apply_hitl_response(node, request, response, result, node_input)

    def _apply_hitl_response(
        self,
        node: WorkflowNode,
        request: HITLRequest,
        response: HITLResponse,
        result: NodeResult,
        node_input: str,
    ) -> NodeResult:
        if response.action not in request.allowed_actions:
            self.logger.warning(
                f"⚠ Action '{response.action}' is not offered in {request.mode} mode for {node.label}; applying it anyway"
            )
        metadata = {**result.metadata, "hitl_action": response.action.value}

        if response.action == HITLAction.MODIFY:
            content = response.modified_content if response.modified_content is not None else result.output
            return dataclasses.replace(result, output=content, metadata=metadata)
        if response.action == HITLAction.REJECT:
            self.logger.info(f"   ✗ {node.label} rejected by reviewer")
            return dataclasses.replace(
                result, next_handles=[REJECTED_HANDLE], message_role=None, metadata=metadata
            )
        if response.action == HITLAction.SKIP:
            return dataclasses.replace(result, output=node_input, message_role=None, metadata=metadata)
        return dataclasses.replace(result, metadata=metadata)

    # === FAN-OUT ===

    async def _fan_out(
        self,
        ctx: ExecutionContext,
        node: WorkflowNode,
        result: NodeResult,
        trace: NodeTrace,
        edges: list[WorkflowEdge],
        conversation: Conversation,
        branch_id: str | None,
        stop_at: frozenset[str],
    ) -> tuple[str, str | None]:
        """
        Run every edge's subgraph concurrently and merge the outputs.

        Returns:
            (merged text, convergence node id or None)
        """
        convergence = self._find_convergence_node(ctx.graph, [e.target for e in edges], stop_at)
        branch_stop = stop_at | {convergence} if convergence else stop_at

        self.logger.info(f"   ⑂ Fan-out: executing {len(edges)} branches in parallel")

        async def run_branch(edge: WorkflowEdge) -> BranchOutcome:
            key = edge.source_handle or edge.target
            outcome = BranchOutcome(
                branch_id=f"{branch_id}/{key}" if branch_id else key,
                label=result.branch_labels.get(edge.handle) or self._node_label(ctx.graph, edge.target),
                target=edge.target,
            )
            set_trace_context(branch_id=outcome.branch_id)
            if self._event_bus:
                await self._event_bus.emit(
                    EventType.BRANCH_STARTED, ctx.run_id, node_id=edge.target, branch_id=outcome.branch_id
                )
            try:
                outcome.output = await self._walk(
                    ctx,
                    edge.target,
                    result.output,
                    conversation.fork(),
                    outcome.branch_id,
                    branch_stop,
                    result.branch_overrides.get(edge.handle),
                )
            except ExecutionCancelledError:
                raise
            except ExecutionError as e:
                if ctx.options.fail_fast:
                    raise
                self.logger.warning(f"   ⑂ Branch {outcome.label} failed: {e}")
                outcome.error = e
            if self._event_bus:
                await self._event_bus.emit(
                    EventType.BRANCH_COMPLETED,
                    ctx.run_id,
                    node_id=edge.target,
                    branch_id=outcome.branch_id,
                    success=outcome.succeeded,
                )
            return outcome

        tasks = [asyncio.create_task(run_branch(edge)) for edge in edges]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        merged = self.format_merge(outcomes)
        if result.merge_prompt:
            merged = await self._merge_with_model(ctx, node, result, trace, merged, conversation, branch_id)

        conversation.add_assistant_message(merged, node_id=node.id)
        ctx.outputs[node.id] = merged
        trace.output = merged
        trace.metadata["branches"] = {
            o.branch_id: {"label": o.label, "success": o.succeeded, "error": str(o.error) if o.error else None}
            for o in outcomes
        }
        failed = sum(1 for o in outcomes if not o.succeeded)
        self.logger.info(f"   ⑂ Merged {len(outcomes)} branches ({failed} failed)")
        return merged, convergence

    @staticmethod
    def format_merge(outcomes: list[BranchOutcome]) -> str:
        sections = []
        for outcome in outcomes:
            body = outcome.output if outcome.succeeded else f"[Error] {outcome.error}"
            sections.append(f"## {outcome.label}\n{body}")
        return "\n\n".join(sections)

    async def _merge_with_model(
        self,
        ctx: ExecutionContext,
        node: WorkflowNode,
        result: NodeResult,
        trace: NodeTrace,
        merged: str,
        conversation: Conversation,
        branch_id: str | None,
    ) -> str:
        services = NodeServices(self, ctx, node, conversation, branch_id, trace)
        messages = [
            {"role": "system", "content": result.merge_prompt},
            {
                "role": "user",
                "content": (
                    f"Here are the outputs from parallel agents:\n\n{merged}\n\n"
                    "Please merge/summarize these outputs according to your instructions."
                ),
            },
        ]

        async def call() -> str:
            await services.compact_if_needed(messages, result.merge_model)
            response = await services.invoke(messages, model=result.merge_model)
            return response.content

        extension = self.registry.get(node.type)
        data = extension.parse_data(node.data) if extension else NodeData()
        return await self._with_retry(ctx, node, data, trace, call)

    @staticmethod
    def _node_label(graph: WorkflowSnapshot, node_id: str) -> str:
        node = graph.get_node(node_id)
        return node.label if node else node_id

    @staticmethod
    def _reachable(graph: WorkflowSnapshot, start: str, stop_at: frozenset[str]) -> dict[str, int]:
        """BFS distances from ``start``; ``stop_at`` nodes are reached but not expanded."""
        distances = {start: 0}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current in stop_at:
                continue
            for edge in graph.edges:
                if edge.source == current and edge.target not in distances:
                    distances[edge.target] = distances[current] + 1
                    queue.append(edge.target)
        return distances

    def _find_convergence_node(
        self,
        graph: WorkflowSnapshot,
        targets: list[str],
        stop_at: frozenset[str],
    ) -> str | None:
        """
        Find the node where parallel branches converge (fan-in).

        The nearest node reachable from every branch target, judged by the
        longest branch distance to it.
        """
        reach = [self._reachable(graph, target, stop_at) for target in targets]
        common = set(reach[0]).intersection(*reach[1:])
        if not common:
            return None
        return min(common, key=lambda n: (max(r[n] for r in reach), sum(r[n] for r in reach), n))

    # === NESTED RUNS ===

    async def run_subgraph(
        self,
        ctx: ExecutionContext,
        graph: WorkflowSnapshot,
        node_input: str,
        conversation: Conversation,
        scope: str,
    ) -> str:
        """Run a nested workflow (subflow) inside the current run."""
        child = ctx.child(graph, conversation, scope)
        start_node = self._find_start_node(graph)
        self._check_workflow(graph)
        return await self._walk(child, start_node.id, node_input, conversation, branch_id=scope)
