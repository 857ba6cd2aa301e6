"""
Node services - what a node handler may ask of the running executor.

A fresh ``NodeServices`` is built for every dispatch. It binds the executor,
the run context, the node, the conversation the node works on (a fork inside
parallel branches) and the node's trace entry, so a handler never needs to
reach into executor internals.
"""

import inspect
import logging
from typing import TYPE_CHECKING, Any

from flowgraph.graph.conversation import (
    MODEL_CONTEXT_LIMITS,
    ApproximateTokenCounter,
    CompactionConfig,
    Conversation,
    compact_conversation,
)
from flowgraph.graph.errors import (
    ExecutionCancelledError,
    ExecutionError,
    ModalityUnsupportedError,
    NodeExecutionError,
    ProviderError,
)
from flowgraph.graph.models import WorkflowEdge, WorkflowNode, WorkflowSnapshot
from flowgraph.llm.provider import InvokeOptions, LLMResponse, TokenUsage, ToolResult, ToolUse
from flowgraph.llm.stream_events import (
    FinishEvent,
    ReasoningDeltaEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)
from flowgraph.runtime.event_bus import EventType

if TYPE_CHECKING:
    from flowgraph.graph.executor import (
        ExecutionContext,
        ExecutionOptions,
        NodeTrace,
        ToolHandler,
        WorkflowExecutor,
    )
    from flowgraph.graph.subflow import SubflowDefinition
    from flowgraph.storage.memory import MemoryAdapter

logger = logging.getLogger(__name__)

# Attachment type -> model input modality
_ATTACHMENT_MODALITIES = {"image": "image", "audio": "audio", "file": "file"}


class NodeServices:
    def __init__(
        self,
        executor: "WorkflowExecutor",
        ctx: "ExecutionContext",
        node: WorkflowNode,
        conversation: Conversation,
        branch_id: str | None,
        trace: "NodeTrace",
    ):
        self.executor = executor
        self.ctx = ctx
        self.node = node
        self.conversation = conversation
        self.branch_id = branch_id
        self.trace = trace

    @property
    def options(self) -> "ExecutionOptions":
        return self.ctx.options

    @property
    def default_model(self) -> str:
        return self.ctx.options.default_model

    @property
    def graph(self) -> WorkflowSnapshot:
        return self.ctx.graph

    @property
    def run_id(self) -> str:
        return self.ctx.run_id

    @property
    def outputs(self) -> dict[str, str]:
        return self.ctx.outputs

    @property
    def path(self) -> list[str]:
        """Ids of the nodes completed so far in this run, in order."""
        return [t.node_id for t in self.ctx.trace if t.status == "completed"]

    @property
    def memory(self) -> "MemoryAdapter":
        return self.options.memory or self.executor.memory

    @property
    def session_id(self) -> str:
        return self.options.session_id or self.ctx.run_id

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return self.ctx.graph.get_node(node_id)

    def get_outgoing_edges(self, handle: str | None = None) -> list[WorkflowEdge]:
        return self.ctx.graph.get_outgoing_edges(self.node.id, handle)

    def is_cancelled(self) -> bool:
        return self.ctx.cancelled

    def check_cancelled(self) -> None:
        if self.ctx.cancelled:
            raise ExecutionCancelledError(self.node.id)

    # === MESSAGES ===

    async def build_messages(
        self,
        system_prompt: str | None,
        user_input: str | None = None,
        model: str | None = None,
        attach_media: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Assemble the outbound request for a model call.

        The shared conversation is included as-is; ``user_input`` is appended
        as a pending user turn unless it repeats the last message. Compaction
        runs first when configured, and run attachments are added to the last
        user turn when ``attach_media`` is set.
        """
        model = model or self.default_model
        prefix: list[dict[str, Any]] = []
        if system_prompt:
            prefix.append({"role": "system", "content": system_prompt})
        pending: list[dict[str, Any]] = []
        if user_input and user_input != self.conversation.last_content():
            pending.append({"role": "user", "content": user_input})

        await self._maybe_compact(model, prefix + pending)

        messages = prefix + self.conversation.to_llm_messages() + pending
        if attach_media and self.options.attachments:
            await self._attach_media(messages, model)
        return messages

    async def compact_if_needed(self, messages: list[dict[str, Any]], model: str | None = None) -> None:
        """Compaction check for a request built without ``build_messages``."""
        await self._maybe_compact(model or self.default_model, messages)

    async def _maybe_compact(self, model: str, extra_messages: list[dict[str, Any]]) -> None:
        config: CompactionConfig | None = self.options.compaction
        if config is None or not config.enabled:
            return

        counter = self.options.token_counter or ApproximateTokenCounter()
        if model in MODEL_CONTEXT_LIMITS:
            context_limit = MODEL_CONTEXT_LIMITS[model]
        else:
            context_limit = (await self.executor.provider.get_capabilities(model)).context_length
        threshold = config.resolve_threshold(context_limit)

        async def summarize(prompt: str) -> str:
            response = await self._call_provider(
                [{"role": "user", "content": prompt}],
                config.summarize_model or model,
                InvokeOptions(temperature=0.3),
                stream=False,
            )
            return response.content

        result = await compact_conversation(
            self.conversation, config, counter, threshold, summarize, extra_messages
        )
        if result.compacted and self.executor.event_bus:
            await self.executor.event_bus.emit(
                EventType.CONTEXT_COMPACTED,
                self.run_id,
                node_id=self.node.id,
                branch_id=self.branch_id,
                tokens_before=result.tokens_before,
                tokens_after=result.tokens_after,
                messages_compacted=result.messages_compacted,
                strategy=config.strategy.value,
            )

    async def _attach_media(self, messages: list[dict[str, Any]], model: str) -> None:
        target = next((m for m in reversed(messages) if m["role"] == "user"), None)
        if target is None:
            logger.warning(f"No user message to attach media to in {self.node.label}")
            return

        capabilities = await self.executor.provider.get_capabilities(model)
        parts: list[dict[str, Any]] = []
        for attachment in self.options.attachments:
            modality = _ATTACHMENT_MODALITIES.get(attachment.type, attachment.type)
            if not capabilities.supports(modality):
                if self.options.strict_modalities:
                    raise ModalityUnsupportedError(model, modality, self.node.id)
                logger.warning(f"⚠ Model '{model}' does not accept {modality} input; skipping attachment")
                continue
            url = attachment.resolve_url()
            if url is None:
                logger.warning(f"⚠ Attachment {attachment.name or attachment.type} has no content; skipping")
                continue
            if modality == "image":
                parts.append({"type": "image_url", "image_url": {"url": url}})
            else:
                parts.append({"type": "file", "file": {"url": url, "mime_type": attachment.mime_type}})

        if parts:
            content = target.get("content") or ""
            target["content"] = [{"type": "text", "text": content}, *parts]

    # === MODEL CALLS ===

    def _invoke_options(self, options: InvokeOptions | None) -> InvokeOptions:
        options = options or InvokeOptions()
        if options.temperature is None:
            options.temperature = self.options.temperature
        if options.max_tokens is None:
            options.max_tokens = self.options.max_tokens
        return options

    async def invoke(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        options: InvokeOptions | None = None,
    ) -> LLMResponse:
        """
        One model turn, streamed to callbacks when streaming is enabled.

        Usage is charged to this node's trace and to the run.
        """
        return await self._call_provider(
            messages, model or self.default_model, self._invoke_options(options), self.options.stream
        )

    async def _call_provider(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions,
        stream: bool,
    ) -> LLMResponse:
        self.check_cancelled()
        if stream:
            response = await self._stream(messages, model, options)
        else:
            response = await self.executor.provider.invoke(messages, model, options)
        self.trace.usage.add(response.usage)
        self.ctx.usage.add(response.usage)
        self.trace.metadata.setdefault("model", response.model or model)
        return response

    async def _stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions,
    ) -> LLMResponse:
        from flowgraph.graph.executor import notify

        callbacks = self.options.callbacks
        bus = self.executor.event_bus
        text = ""
        reasoning = ""
        tool_calls: list[ToolUse] = []
        usage = TokenUsage()
        stop_reason = ""
        response_model = model

        async for event in self.executor.provider.stream(messages, model, options):
            self.check_cancelled()
            if isinstance(event, TextDeltaEvent):
                text += event.content
                await notify(callbacks.on_token, self.node.id, event.content, self.branch_id)
                if bus:
                    await bus.emit_llm_text_delta(
                        self.run_id, self.node.id, event.content, text, self.branch_id
                    )
            elif isinstance(event, ReasoningDeltaEvent):
                reasoning += event.content
                await notify(callbacks.on_reasoning, self.node.id, event.content, self.branch_id)
                if bus:
                    await bus.emit_llm_reasoning_delta(
                        self.run_id, self.node.id, event.content, self.branch_id
                    )
            elif isinstance(event, ToolCallEvent):
                tool_calls.append(ToolUse(id=event.tool_use_id, name=event.tool_name, input=event.tool_input))
            elif isinstance(event, TextEndEvent):
                text = event.full_text or text
            elif isinstance(event, FinishEvent):
                stop_reason = event.stop_reason
                usage = TokenUsage(input_tokens=event.input_tokens, output_tokens=event.output_tokens)
                response_model = event.model or model
            elif isinstance(event, StreamErrorEvent):
                raise ProviderError(event.error, transient=event.recoverable, node_id=self.node.id)

        return LLMResponse(
            content=text,
            model=response_model,
            tool_calls=tool_calls,
            usage=usage,
            stop_reason=stop_reason,
            reasoning=reasoning,
        )

    # === TOOLS ===

    async def call_tool(self, tool_use: ToolUse, executor: "ToolHandler | None" = None) -> ToolResult:
        """
        Resolve one tool call.

        Order: the explicit ``executor`` argument, the run's ToolRegistry,
        then the ``on_tool_call`` option. Unresolvable calls come back as
        error results so the model can recover.
        """
        from flowgraph.graph.executor import notify
        from flowgraph.runner.tool_registry import stringify_tool_output

        self.check_cancelled()
        bus = self.executor.event_bus
        await notify(self.options.callbacks.on_tool_event, self.node.id, tool_use, None)
        if bus:
            await bus.emit_tool_call_started(
                self.run_id, self.node.id, tool_use.id, tool_use.name, tool_use.input
            )
        logger.info(f"   🔧 Tool call: {tool_use.name}")

        registry = self.options.tools
        handler = executor or self.options.on_tool_call
        if executor is None and registry is not None and registry.has_tool(tool_use.name):
            result = await registry.execute(tool_use)
        elif handler is not None:
            try:
                raw = handler(tool_use)
                if inspect.isawaitable(raw):
                    raw = await raw
            except ExecutionError:
                raise
            except Exception as e:
                logger.warning(f"Tool '{tool_use.name}' raised: {e}")
                raw = ToolResult(tool_use_id=tool_use.id, content=f"Error: {e}", is_error=True)
            if isinstance(raw, ToolResult):
                result = ToolResult(tool_use_id=tool_use.id, content=raw.content, is_error=raw.is_error)
            else:
                result = ToolResult(tool_use_id=tool_use.id, content=stringify_tool_output(raw))
        else:
            result = ToolResult(
                tool_use_id=tool_use.id,
                content=f"No handler available for tool '{tool_use.name}'",
                is_error=True,
            )

        self.trace.tool_calls.append(
            {**tool_use.to_dict(), "result": result.content, "is_error": result.is_error}
        )
        await notify(self.options.callbacks.on_tool_event, self.node.id, tool_use, result)
        if bus:
            await bus.emit_tool_call_completed(
                self.run_id, self.node.id, tool_use.id, tool_use.name, result.content, result.is_error
            )
        return result

    # === NESTED EXECUTION ===

    async def execute_subgraph(
        self,
        start_node_id: str,
        input: str,
        stop_at: set[str] | frozenset[str] = frozenset(),
        conversation: Conversation | None = None,
    ) -> str:
        """Walk from ``start_node_id`` until a dead end or a ``stop_at`` node."""
        return await self.executor._walk(
            self.ctx,
            start_node_id,
            input,
            conversation or self.conversation,
            self.branch_id,
            frozenset(stop_at),
        )

    async def execute_subflow(
        self,
        definition: "SubflowDefinition",
        input: str,
        share_session: bool = True,
    ) -> str:
        """Run a reusable workflow inline; its nodes show up in this run's trace."""
        if self.ctx.depth >= self.options.max_subflow_depth:
            raise NodeExecutionError(
                f"Subflow nesting exceeds {self.options.max_subflow_depth} levels", self.node.id
            )
        conversation = self.conversation if share_session else Conversation()
        scope = f"{self.branch_id}/{definition.id}" if self.branch_id else definition.id
        logger.info(f"   📂 Entering subflow {definition.name or definition.id}")
        return await self.executor.run_subgraph(
            self.ctx, definition.workflow.model_copy(deep=True), input, conversation, scope
        )
