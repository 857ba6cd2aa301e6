"""Tests for the built-in node types running inside the executor."""

import json
from unittest.mock import AsyncMock

import pytest
from conftest import PromptRoutedProvider, edge, node, snapshot

from flowgraph.graph.errors import (
    MaxToolIterationsExceededError,
    ModalityUnsupportedError,
    NodeExecutionError,
    ProviderError,
    UnknownNodeTypeError,
)
from flowgraph.graph.executor import (
    Attachment,
    ExecutionCallbacks,
    ExecutionOptions,
    ExecutionState,
    WorkflowExecutor,
)
from flowgraph.graph.nodes.output import OutputFormat, format_output
from flowgraph.graph.subflow import SubflowDefinition, SubflowInput, SubflowRegistry
from flowgraph.llm.mock import MockLLMProvider, tool_call_response
from flowgraph.llm.provider import LLMResponse, ToolResult, ToolUse
from flowgraph.runner.tool_registry import ToolRegistry
from flowgraph.storage.memory import InMemoryMemoryAdapter, MemoryEntry, MemoryMetadata, MemoryQuery


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    monkeypatch.setattr("asyncio.sleep", AsyncMock())


def agent_graph(**data):
    return snapshot(
        [node("start", "start"), node("agent", "agent", prompt="You are helpful", **data)],
        [edge("start", "agent")],
    )


def weather_registry() -> ToolRegistry:
    registry = ToolRegistry()

    def get_weather(city: str) -> dict:
        """Current weather for a city."""
        return {"city": city, "temp": 21}

    registry.register_function(get_weather)
    return registry


# === AGENT ===


class TestAgentToolLoop:
    @pytest.mark.asyncio
    async def test_registry_tool_round_trip(self):
        provider = MockLLMProvider(
            [tool_call_response("get_weather", {"city": "Oslo"}), "It is 21 degrees in Oslo."]
        )
        options = ExecutionOptions(tools=weather_registry())
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(agent_graph(tools=["get_weather"]), "Weather in Oslo?")

        assert result.output == "It is 21 degrees in Oslo."
        agent_trace = result.trace[1]
        assert len(agent_trace.tool_calls) == 1
        assert agent_trace.tool_calls[0]["name"] == "get_weather"
        assert agent_trace.tool_calls[0]["result"] == '{"city": "Oslo", "temp": 21}'

        second = provider.calls[1].messages
        assert second[-2]["role"] == "assistant"
        assert second[-2]["tool_calls"][0]["function"]["name"] == "get_weather"
        assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": '{"city": "Oslo", "temp": 21}'}

    @pytest.mark.asyncio
    async def test_tool_definitions_are_sent(self):
        provider = MockLLMProvider(["no tools needed"])
        executor = WorkflowExecutor(provider, options=ExecutionOptions(tools=weather_registry()))

        await executor.execute(agent_graph(tools=["get_weather"]), "hi")

        tools = provider.calls[0].options.tools
        assert [t.name for t in tools] == ["get_weather"]
        assert tools[0].parameters["required"] == ["city"]

    @pytest.mark.asyncio
    async def test_tool_messages_stay_local_to_node(self):
        provider = MockLLMProvider([tool_call_response("lookup", {"q": "x"}), "first", "second"])
        graph = snapshot(
            [
                node("start", "start"),
                node("a", "agent", prompt="one", tools=["lookup"]),
                node("b", "agent", prompt="two"),
            ],
            [edge("start", "a"), edge("a", "b")],
        )
        options = ExecutionOptions(on_tool_call=lambda call: "found")
        executor = WorkflowExecutor(provider, options=options)

        await executor.execute(graph, "query")

        roles = [m["role"] for m in provider.calls[2].messages]
        assert roles == ["system", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_on_tool_call_fallback(self):
        seen = []

        async def handle(call: ToolUse) -> ToolResult:
            seen.append(call.name)
            return ToolResult(tool_use_id="ignored", content="42")

        provider = MockLLMProvider([tool_call_response("answer", {}), "The answer is 42"])
        executor = WorkflowExecutor(provider, options=ExecutionOptions(on_tool_call=handle))

        result = await executor.execute(agent_graph(tools=["answer"]), "?")

        assert seen == ["answer"]
        assert result.trace[1].tool_calls[0]["result"] == "42"

    @pytest.mark.asyncio
    async def test_unhandled_tool_reports_error_to_model(self):
        provider = MockLLMProvider([tool_call_response("missing", {}), "recovered"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(agent_graph(tools=["missing"]), "?")

        assert result.output == "recovered"
        call = result.trace[1].tool_calls[0]
        assert call["is_error"] is True
        assert call["result"] == "No handler available for tool 'missing'"

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error_result(self):
        registry = ToolRegistry()

        def fails() -> str:
            raise RuntimeError("disk full")

        registry.register_function(fails)
        provider = MockLLMProvider([tool_call_response("fails", {}), "sorry"])
        executor = WorkflowExecutor(provider, options=ExecutionOptions(tools=registry))

        result = await executor.execute(agent_graph(tools=["fails"]), "?")

        assert result.success
        assert result.trace[1].tool_calls[0]["result"] == "Error: disk full"

    @pytest.mark.asyncio
    async def test_tool_events(self):
        events = []
        callbacks = ExecutionCallbacks(
            on_tool_event=lambda node_id, call, result: events.append((call.name, result is None))
        )
        provider = MockLLMProvider([tool_call_response("get_weather", {"city": "Rome"}), "sunny"])
        options = ExecutionOptions(tools=weather_registry(), callbacks=callbacks)
        executor = WorkflowExecutor(provider, options=options)

        await executor.execute(agent_graph(tools=["get_weather"]), "?")

        assert events == [("get_weather", True), ("get_weather", False)]

    @pytest.mark.asyncio
    async def test_max_tool_iterations_error(self):
        provider = MockLLMProvider([tool_call_response("loop", {}) for _ in range(3)])
        options = ExecutionOptions(on_tool_call=lambda call: "again")
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(agent_graph(tools=["loop"], max_tool_iterations=3), "?")

        assert result.state == ExecutionState.FAILED
        assert isinstance(result.error, MaxToolIterationsExceededError)
        assert provider.call_count == 3

    @pytest.mark.asyncio
    async def test_max_tool_iterations_warning(self):
        provider = MockLLMProvider(
            [tool_call_response("loop", {}, content="thinking") for _ in range(2)]
        )
        options = ExecutionOptions(on_tool_call=lambda call: "again")
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(
            agent_graph(tools=["loop"], max_tool_iterations=2, on_max_tool_iterations="warning"), "?"
        )

        assert result.success
        assert result.output == "Warning: Maximum tool iterations (2) reached. Last content: thinking"

    @pytest.mark.asyncio
    async def test_node_settings_reach_provider(self):
        provider = MockLLMProvider(["ok"])
        executor = WorkflowExecutor(provider, options=ExecutionOptions(default_model="base-model"))

        await executor.execute(agent_graph(model="special-model", temperature=0.2, max_tokens=50), "?")

        call = provider.calls[0]
        assert call.model == "special-model"
        assert call.options.temperature == 0.2
        assert call.options.max_tokens == 50

    @pytest.mark.asyncio
    async def test_default_model_used(self):
        provider = MockLLMProvider(["ok"])
        executor = WorkflowExecutor(provider, options=ExecutionOptions(default_model="base-model"))

        await executor.execute(agent_graph(), "?")

        assert provider.calls[0].model == "base-model"


class TestAttachments:
    IMAGE = Attachment(type="image", content="aGVsbG8=", mime_type="image/png", name="photo.png")

    @pytest.mark.asyncio
    async def test_image_added_to_user_turn(self):
        provider = PromptRoutedProvider()
        options = ExecutionOptions(default_model="openai/gpt-4o", attachments=[self.IMAGE])
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(agent_graph(), "describe this")

        messages = provider.requests[0][0]
        assert messages[-1]["content"] == [
            {"type": "text", "text": "describe this"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGVsbG8="}},
        ]
        assert result.success

    @pytest.mark.asyncio
    async def test_unsupported_modality_is_skipped(self):
        provider = PromptRoutedProvider()
        options = ExecutionOptions(default_model="text-only", attachments=[self.IMAGE])
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(agent_graph(), "describe this")

        assert provider.requests[0][0][-1]["content"] == "describe this"
        assert result.success

    @pytest.mark.asyncio
    async def test_strict_modalities_fail_the_run(self):
        options = ExecutionOptions(default_model="text-only", attachments=[self.IMAGE], strict_modalities=True)
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(agent_graph(), "describe this")

        assert result.state == ExecutionState.FAILED
        assert isinstance(result.error, ModalityUnsupportedError)
        assert result.error.modality == "image"


# === ROUTER ===


def router_graph(**router_data):
    return snapshot(
        [
            node("start", "start"),
            node("router", "router", **router_data),
            node("billing", "agent", prompt="You handle billing"),
            node("support", "agent", prompt="You handle support"),
        ],
        [
            edge("start", "router"),
            edge("router", "billing", "route-1"),
            edge("router", "support", "route-2"),
        ],
    )


class TestRouter:
    @pytest.mark.asyncio
    async def test_routes_via_tool_call(self):
        provider = PromptRoutedProvider(
            {
                "routing classifier": LLMResponse(
                    content="",
                    model="m",
                    tool_calls=[
                        ToolUse(id="r1", name="select_route", input={"route_id": "route-2", "reasoning": "bug"})
                    ],
                ),
                "support": "support answer",
            }
        )
        routed = []
        options = ExecutionOptions(callbacks=ExecutionCallbacks(on_route_selected=lambda n, h: routed.append(h)))
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(router_graph(), "The app crashes")

        assert result.path == ["start", "router", "support"]
        assert result.output == "support answer"
        router_trace = result.trace[1]
        assert router_trace.output == "The app crashes"
        assert router_trace.metadata["selected_route"] == "route-2"
        assert router_trace.metadata["reasoning"] == "bug"
        assert router_trace.metadata["fallback_used"] is False
        assert routed == ["route-2"]

    @pytest.mark.asyncio
    async def test_text_answer_matches_route_name(self):
        provider = PromptRoutedProvider({"routing classifier": "billing"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(router_graph(), "Refund please")

        assert result.path == ["start", "router", "billing"]

    @pytest.mark.asyncio
    async def test_numeric_answer_selects_by_position(self):
        provider = PromptRoutedProvider({"routing classifier": "2"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(router_graph(), "?")

        assert result.path[-1] == "support"

    @pytest.mark.asyncio
    async def test_unusable_answer_falls_back_to_first_route(self):
        provider = PromptRoutedProvider({"routing classifier": "no idea"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(router_graph(), "?")

        assert result.path[-1] == "billing"
        assert result.trace[1].metadata["fallback_used"] is True

    @pytest.mark.asyncio
    async def test_route_definitions_shape_prompt(self):
        provider = PromptRoutedProvider({"routing classifier": "route-1"})
        executor = WorkflowExecutor(provider)
        graph = router_graph(
            prompt="Prefer billing for anything about money",
            routes=[{"id": "route-1", "label": "Payments", "description": "Invoices and refunds"}],
        )

        await executor.execute(graph, "?")

        system = provider.requests[0][0][0]["content"]
        assert 'Name: "Payments"' in system
        assert "Description: Invoices and refunds" in system
        assert "## Routing Rules" in system
        options = provider.requests[0][2]
        assert options.temperature == 0
        assert options.tools[0].name == "select_route"

    @pytest.mark.asyncio
    async def test_router_adds_nothing_to_conversation(self):
        provider = PromptRoutedProvider({"routing classifier": "route-1"})
        executor = WorkflowExecutor(provider)

        await executor.execute(router_graph(), "hello")

        billing_messages = provider.requests[1][0]
        assert [m["role"] for m in billing_messages] == ["system", "user"]


# === TOOL NODE ===


class TestToolNode:
    @pytest.mark.asyncio
    async def test_runs_registered_tool_with_arguments(self):
        graph = snapshot(
            [node("start", "start"), node("weather", "tool", tool_id="get_weather", arguments={"city": "Lima"})],
            [edge("start", "weather")],
        )
        provider = MockLLMProvider()
        executor = WorkflowExecutor(provider, options=ExecutionOptions(tools=weather_registry()))

        result = await executor.execute(graph, "ignored")

        assert result.output == '{"city": "Lima", "temp": 21}'
        assert provider.call_count == 0
        assert len(result.trace[1].tool_calls) == 1

    @pytest.mark.asyncio
    async def test_default_arguments_carry_input(self):
        seen = []
        graph = snapshot(
            [node("start", "start"), node("echo", "tool", tool_id="echo")],
            [edge("start", "echo")],
        )
        options = ExecutionOptions(on_tool_call=lambda call: seen.append(call.input) or "echoed")
        executor = WorkflowExecutor(MockLLMProvider(), options=options)

        result = await executor.execute(graph, "payload")

        assert seen == [{"input": "payload"}]
        assert result.output == "echoed"

    @pytest.mark.asyncio
    async def test_tool_failure_fails_node(self):
        graph = snapshot(
            [node("start", "start"), node("echo", "tool", tool_id="unknown")],
            [edge("start", "echo")],
        )
        executor = WorkflowExecutor(MockLLMProvider())

        result = await executor.execute(graph, "x")

        assert result.state == ExecutionState.FAILED
        assert isinstance(result.error, ProviderError)
        assert "No handler available" in str(result.error)


# === WHILE LOOP ===


def loop_graph(**loop_data):
    return snapshot(
        [
            node("start", "start"),
            node("loop", "while_loop", **loop_data),
            node("worker", "agent", prompt="You refine drafts"),
            node("final", "agent", prompt="You publish"),
        ],
        [
            edge("start", "loop"),
            edge("loop", "worker", "body"),
            edge("worker", "loop"),
            edge("loop", "final", "done"),
        ],
    )


class TestWhileLoop:
    @pytest.mark.asyncio
    async def test_custom_evaluator_controls_iterations(self):
        states = []

        def keep_going(state):
            states.append(state)
            return state.iteration < 3

        provider = PromptRoutedProvider({"You refine drafts": "draft", "You publish": "published"})
        options = ExecutionOptions(custom_evaluators={"three_passes": keep_going})
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(loop_graph(custom_evaluator="three_passes"), "idea")

        assert result.output == "published"
        assert result.path.count("worker") == 3
        loop_trace = next(t for t in result.trace if t.node_id == "loop")
        assert loop_trace.metadata["iterations"] == 3
        assert loop_trace.metadata["max_iterations_reached"] is False
        assert [s.iteration for s in states] == [1, 2, 3]
        assert states[-1].outputs == ["draft", "draft", "draft"]

    @pytest.mark.asyncio
    async def test_async_evaluator(self):
        async def once(state):
            return False

        options = ExecutionOptions(custom_evaluators={"once": once})
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(loop_graph(custom_evaluator="once"), "idea")

        assert result.path.count("worker") == 1

    @pytest.mark.asyncio
    async def test_model_decides_when_to_stop(self):
        provider = MockLLMProvider(["v1", "continue", "v2", "done", "shipped"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(loop_graph(), "idea")

        assert result.output == "shipped"
        assert result.path.count("worker") == 2
        condition_call = provider.calls[1]
        assert "loop controller" in condition_call.messages[0]["content"]
        assert "Last output: v1" in condition_call.messages[1]["content"]
        assert condition_call.options.max_tokens == 10

    @pytest.mark.asyncio
    async def test_each_pass_feeds_the_next(self):
        provider = MockLLMProvider(["v1", "continue", "v2", "done", "shipped"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(loop_graph(), "idea")

        worker_inputs = [t.input for t in result.trace if t.node_id == "worker"]
        assert worker_inputs == ["idea", "v1"]
        final_trace = next(t for t in result.trace if t.node_id == "final")
        assert final_trace.input == "v2"

    @pytest.mark.asyncio
    async def test_max_iterations_warning(self):
        options = ExecutionOptions(custom_evaluators={"forever": lambda state: True})
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(loop_graph(custom_evaluator="forever", max_iterations=2), "idea")

        assert result.success
        loop_trace = next(t for t in result.trace if t.node_id == "loop")
        assert loop_trace.metadata == {"iterations": 2, "max_iterations_reached": True}

    @pytest.mark.asyncio
    async def test_max_iterations_error(self):
        options = ExecutionOptions(custom_evaluators={"forever": lambda state: True})
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(
            loop_graph(custom_evaluator="forever", max_iterations=2, on_max_iterations="error"), "idea"
        )

        assert result.state == ExecutionState.FAILED
        assert isinstance(result.error, NodeExecutionError)
        assert "max iterations (2)" in str(result.error)

    @pytest.mark.asyncio
    async def test_unknown_evaluator_fails(self):
        executor = WorkflowExecutor(PromptRoutedProvider())

        result = await executor.execute(loop_graph(custom_evaluator="nope"), "idea")

        assert result.state == ExecutionState.FAILED
        assert "nope" in str(result.error)


# === SUBFLOW ===


def summarizer_definition(**kwargs) -> SubflowDefinition:
    inner = snapshot(
        [node("s", "start"), node("sum", "agent", prompt="You summarize")],
        [edge("s", "sum")],
    )
    return SubflowDefinition(id="summarizer", name="Summarizer", workflow=inner, **kwargs)


def subflow_graph(**data):
    return snapshot(
        [
            node("start", "start"),
            node("sub", "subflow", subflow_id="summarizer", **data),
            node("after", "agent", prompt="You follow up"),
        ],
        [edge("start", "sub"), edge("sub", "after")],
    )


class TestSubflow:
    @pytest.mark.asyncio
    async def test_runs_nested_workflow(self):
        provider = PromptRoutedProvider({"You summarize": "short", "You follow up": "done"})
        options = ExecutionOptions(subflows=SubflowRegistry([summarizer_definition()]))
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(subflow_graph(), "long text")

        assert result.output == "done"
        assert result.path == ["start", "sub", "s", "sum", "after"]
        nested = [t for t in result.trace if t.node_id in ("s", "sum")]
        assert all(t.branch_id == "summarizer" for t in nested)
        assert result.trace[1].output == "short"

    @pytest.mark.asyncio
    async def test_input_mapping_templates(self):
        definition = summarizer_definition(inputs=[SubflowInput(id="text", required=True)])
        provider = PromptRoutedProvider({"You summarize": "short"})
        options = ExecutionOptions(subflows=SubflowRegistry([definition]))
        executor = WorkflowExecutor(provider, options=options)

        result = await executor.execute(
            subflow_graph(input_mappings={"text": "Summarize: {{input}}"}), "the report"
        )

        nested_start = next(t for t in result.trace if t.node_id == "s")
        assert nested_start.input == "Summarize: the report"

    @pytest.mark.asyncio
    async def test_missing_required_input(self):
        definition = summarizer_definition(inputs=[SubflowInput(id="text", required=True)])
        options = ExecutionOptions(subflows=SubflowRegistry([definition]))
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(subflow_graph(), "x")

        assert result.state == ExecutionState.FAILED
        assert "Missing required inputs" in str(result.error)

    @pytest.mark.asyncio
    async def test_unknown_subflow(self):
        executor = WorkflowExecutor(PromptRoutedProvider(), options=ExecutionOptions(subflows=SubflowRegistry()))

        result = await executor.execute(subflow_graph(), "x")

        assert result.state == ExecutionState.FAILED
        assert "not found" in str(result.error)

    @pytest.mark.asyncio
    async def test_isolated_session(self):
        provider = PromptRoutedProvider({"You summarize": "short", "You follow up": "done"})
        options = ExecutionOptions(subflows=SubflowRegistry([summarizer_definition()]))
        executor = WorkflowExecutor(provider, options=options)

        await executor.execute(subflow_graph(share_session=False), "long text")

        summarize_request = next(msgs for msgs, _, _ in provider.requests if msgs[0]["content"] == "You summarize")
        assert [m["content"] for m in summarize_request[1:]] == ["long text"]
        follow_up = next(msgs for msgs, _, _ in provider.requests if msgs[0]["content"] == "You follow up")
        assert [m["content"] for m in follow_up[1:]] == ["long text", "short"]

    @pytest.mark.asyncio
    async def test_nesting_depth_limit(self):
        recursive = snapshot(
            [node("s", "start"), node("again", "subflow", subflow_id="recursive")],
            [edge("s", "again")],
        )
        registry = SubflowRegistry([SubflowDefinition(id="recursive", workflow=recursive)])
        graph = snapshot(
            [node("start", "start"), node("sub", "subflow", subflow_id="recursive")],
            [edge("start", "sub")],
        )
        options = ExecutionOptions(subflows=registry, max_subflow_depth=3)
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(graph, "x")

        assert result.state == ExecutionState.FAILED
        assert "nesting exceeds 3" in str(result.error)

    @pytest.mark.asyncio
    async def test_unregistered_type_inside_subflow(self):
        inner = snapshot([node("s", "start"), node("x", "teleporter")], [edge("s", "x")])
        options = ExecutionOptions(subflows=SubflowRegistry([SubflowDefinition(id="summarizer", workflow=inner)]))
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        result = await executor.execute(subflow_graph(), "x")

        assert isinstance(result.error, UnknownNodeTypeError)
        assert result.error.node_id == "x"


# === OUTPUT NODE ===


def output_graph(**data):
    return snapshot(
        [
            node("start", "start"),
            node("agent", "agent", prompt="You draft"),
            node("out", "output", **data),
        ],
        [edge("start", "agent"), edge("agent", "out")],
    )


class TestOutputNode:
    @pytest.mark.asyncio
    async def test_passes_input_through_by_default(self):
        executor = WorkflowExecutor(PromptRoutedProvider({"You draft": "hello"}))

        result = await executor.execute(output_graph(), "x")

        assert result.output == "hello"
        assert result.trace[-1].next_handles == []
        assert result.trace[-1].metadata["node_chain"] == ["start", "agent"]

    @pytest.mark.asyncio
    async def test_template_reads_node_outputs(self):
        executor = WorkflowExecutor(PromptRoutedProvider({"You draft": "hello"}))

        result = await executor.execute(
            output_graph(template="Draft: {{agent}} (asked: {{start}}) {{missing}}"), "hi there"
        )

        assert result.output == "Draft: hello (asked: hi there) {{missing}}"

    @pytest.mark.asyncio
    async def test_json_with_metadata(self):
        executor = WorkflowExecutor(PromptRoutedProvider({"You draft": '{"score": 3}'}))

        result = await executor.execute(output_graph(format="json", include_metadata=True), "x")

        payload = json.loads(result.output)
        assert payload["result"] == {"score": 3}
        assert payload["metadata"]["node_chain"] == ["start", "agent"]
        assert "timestamp" in payload["metadata"]

    @pytest.mark.asyncio
    async def test_json_wraps_plain_text(self):
        executor = WorkflowExecutor(PromptRoutedProvider({"You draft": "hello"}))

        result = await executor.execute(output_graph(format="json"), "x")

        assert json.loads(result.output) == {"result": "hello"}

    @pytest.mark.asyncio
    async def test_text_metadata_header(self):
        executor = WorkflowExecutor(PromptRoutedProvider({"You draft": "hello"}))

        result = await executor.execute(output_graph(include_metadata=True), "x")

        assert result.output.startswith("[Executed: start → agent]\n[Time: ")
        assert result.output.endswith("\n\nhello")

    @pytest.mark.asyncio
    async def test_outgoing_edges_are_not_followed(self):
        graph = output_graph()
        graph.nodes.append(node("after", "agent", prompt="You never run"))
        graph.edges.append(edge("out", "after"))
        provider = PromptRoutedProvider({"You draft": "hello"})

        result = await WorkflowExecutor(provider).execute(graph, "x")

        assert result.path == ["start", "agent", "out"]
        assert provider.requests and all(msgs[0]["content"] == "You draft" for msgs, _, _ in provider.requests)


def test_markdown_front_matter():
    text = format_output("# Title", OutputFormat.MARKDOWN, True, ["start", "agent"], "2024-01-01T00:00:00+00:00")

    assert text == "---\nnode_chain: [start, agent]\ntimestamp: 2024-01-01T00:00:00+00:00\n---\n\n# Title"


def test_markdown_without_metadata_is_unchanged():
    assert format_output("# Title", OutputFormat.MARKDOWN) == "# Title"


# === MEMORY NODE ===


def store_graph(**data):
    return snapshot(
        [node("start", "start"), node("remember", "memory", operation="store", **data)],
        [edge("start", "remember")],
    )


def recall_graph(**data):
    return snapshot(
        [node("start", "start"), node("recall", "memory", **data)],
        [edge("start", "recall")],
    )


class TestMemoryNode:
    @pytest.mark.asyncio
    async def test_store_then_recall_in_same_session(self):
        executor = WorkflowExecutor(PromptRoutedProvider(), options=ExecutionOptions(session_id="user-1"))

        stored = await executor.execute(store_graph(), "The billing address is Oslo")
        recalled = await executor.execute(recall_graph(), "billing address?")

        assert stored.output == "The billing address is Oslo"
        assert recalled.output.endswith("[remember] The billing address is Oslo")
        assert recalled.trace[-1].metadata["memory_hits"] == 1

    @pytest.mark.asyncio
    async def test_runs_without_session_id_are_isolated(self):
        executor = WorkflowExecutor(PromptRoutedProvider())

        await executor.execute(store_graph(), "The billing address is Oslo")
        recalled = await executor.execute(recall_graph(), "billing address")

        assert recalled.output == "No memories found."

    @pytest.mark.asyncio
    async def test_custom_fallback(self):
        executor = WorkflowExecutor(PromptRoutedProvider())

        result = await executor.execute(recall_graph(fallback="Nothing yet"), "anything")

        assert result.output == "Nothing yet"

    @pytest.mark.asyncio
    async def test_store_uses_configured_adapter_and_metadata(self):
        adapter = InMemoryMemoryAdapter()
        options = ExecutionOptions(memory=adapter, session_id="user-1")
        executor = WorkflowExecutor(PromptRoutedProvider(), options=options)

        await executor.execute(
            store_graph(text="Prefers email", metadata={"topic": "contact", "source": "user"}), "ignored"
        )

        entries = await adapter.query(MemoryQuery(filter={"topic": "contact"}))
        assert [e.content for e in entries] == ["Prefers email"]
        assert entries[0].metadata.source == "user"
        assert entries[0].metadata.node_id == "remember"
        assert entries[0].metadata.session_id == "user-1"

    @pytest.mark.asyncio
    async def test_recall_feeds_next_node(self):
        adapter = InMemoryMemoryAdapter()
        await adapter.store(
            MemoryEntry(content="Customer is on the Pro plan", metadata=MemoryMetadata(session_id="s"))
        )
        graph = snapshot(
            [
                node("start", "start"),
                node("recall", "memory"),
                node("agent", "agent", prompt="You answer with context"),
            ],
            [edge("start", "recall"), edge("recall", "agent")],
        )
        provider = PromptRoutedProvider({"You answer": "Pro plan it is"})
        options = ExecutionOptions(memory=adapter, session_id="s")

        result = await WorkflowExecutor(provider, options=options).execute(graph, "which plan")

        assert result.output == "Pro plan it is"
        assert "Customer is on the Pro plan" in result.trace[2].input
