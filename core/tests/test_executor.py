"""
Tests for WorkflowExecutor: traversal, fan-out, retries, error modes,
cancellation and the streaming/event surfaces.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import PromptRoutedProvider, edge, node, snapshot

from flowgraph.graph.errors import (
    AmbiguousStartNodeError,
    ExecutionErrorKind,
    InvalidWorkflowError,
    MaxStepsExceededError,
    NoStartNodeError,
    ProviderError,
    UnknownNodeTypeError,
)
from flowgraph.graph.executor import (
    ExecutionCallbacks,
    ExecutionOptions,
    ExecutionState,
    NodeStatus,
    WorkflowExecutor,
)
from flowgraph.llm.mock import MockLLMProvider
from flowgraph.runtime.event_bus import EventBus, EventType


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    mock_sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", mock_sleep)
    return mock_sleep


def linear_graph():
    return snapshot(
        [node("start", "start"), node("agent", "agent")],
        [edge("start", "agent")],
    )


def parallel_graph():
    return snapshot(
        [
            node("start", "start"),
            node("fork", "parallel"),
            node("a", "agent", prompt="You are A"),
            node("b", "agent", prompt="You are B"),
            node("c", "agent", prompt="You are C"),
        ],
        [
            edge("start", "fork"),
            edge("fork", "a", "branch-1"),
            edge("fork", "b", "branch-2"),
            edge("a", "c"),
            edge("b", "c"),
        ],
    )


# === BASIC RUNS ===


class TestLinearExecution:
    @pytest.mark.asyncio
    async def test_start_to_agent(self):
        provider = MockLLMProvider(["pong"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(linear_graph(), "ping")

        assert result.state == ExecutionState.COMPLETED
        assert result.success
        assert result.output == "pong"
        assert result.path == ["start", "agent"]
        assert all(t.status == NodeStatus.COMPLETED for t in result.trace)
        assert executor.state == ExecutionState.COMPLETED

    @pytest.mark.asyncio
    async def test_user_input_is_not_duplicated(self):
        provider = MockLLMProvider(["pong"])
        executor = WorkflowExecutor(provider)

        await executor.execute(linear_graph(), "ping")

        messages = provider.calls[0].messages
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[1]["content"] == "ping"

    @pytest.mark.asyncio
    async def test_agents_share_conversation(self):
        graph = snapshot(
            [node("start", "start"), node("a", "agent", prompt="first"), node("b", "agent", prompt="second")],
            [edge("start", "a"), edge("a", "b")],
        )
        provider = MockLLMProvider(["draft", "final"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "topic")

        assert result.output == "final"
        second_call = provider.calls[1].messages
        assert second_call[0] == {"role": "system", "content": "second"}
        assert [m["content"] for m in second_call[1:]] == ["topic", "draft"]

    @pytest.mark.asyncio
    async def test_history_seeds_conversation(self):
        provider = MockLLMProvider(["ok"])
        executor = WorkflowExecutor(provider)

        await executor.execute(
            linear_graph(),
            "and now?",
            history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        )

        contents = [m["content"] for m in provider.calls[0].messages[1:]]
        assert contents == ["hi", "hello", "and now?"]

    @pytest.mark.asyncio
    async def test_usage_is_accumulated(self):
        provider = PromptRoutedProvider(default="done")
        executor = WorkflowExecutor(provider)

        result = await executor.execute(linear_graph(), "go")

        assert result.usage.total_tokens == 15
        assert result.trace[1].usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_edits_during_run_do_not_leak(self):
        graph = linear_graph()

        def on_start(node_id, branch_id):
            graph.nodes.clear()
            graph.edges.clear()

        options = ExecutionOptions(callbacks=ExecutionCallbacks(on_node_start=on_start))
        executor = WorkflowExecutor(MockLLMProvider(["pong"]), options=options)

        result = await executor.execute(graph, "ping")

        assert result.output == "pong"
        assert result.path == ["start", "agent"]

    @pytest.mark.asyncio
    async def test_accepts_plain_dict(self):
        executor = WorkflowExecutor(MockLLMProvider(["pong"]))

        result = await executor.execute(linear_graph().model_dump(), "ping")

        assert result.output == "pong"

    @pytest.mark.asyncio
    async def test_to_dict(self):
        executor = WorkflowExecutor(MockLLMProvider(["pong"]))

        result = await executor.execute(linear_graph(), "ping")
        data = result.to_dict()

        assert data["state"] == "completed"
        assert data["error"] is None
        assert [t["node_id"] for t in data["trace"]] == ["start", "agent"]


class TestStartNodeResolution:
    @pytest.mark.asyncio
    async def test_no_start_node(self):
        graph = snapshot([node("agent", "agent")], [])
        executor = WorkflowExecutor(MockLLMProvider())

        result = await executor.execute(graph, "x")

        assert result.state == ExecutionState.FAILED
        assert isinstance(result.error, NoStartNodeError)
        with pytest.raises(NoStartNodeError):
            result.raise_for_error()

    @pytest.mark.asyncio
    async def test_multiple_start_nodes(self):
        graph = snapshot([node("s1", "start"), node("s2", "start")], [])
        executor = WorkflowExecutor(MockLLMProvider())

        result = await executor.execute(graph, "x")

        assert isinstance(result.error, AmbiguousStartNodeError)
        assert result.trace == []

    @pytest.mark.asyncio
    async def test_invalid_workflow_is_rejected(self):
        graph = snapshot(
            [node("start", "start"), node("router", "router")],
            [edge("start", "router")],
        )
        provider = MockLLMProvider()
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "x")

        assert isinstance(result.error, InvalidWorkflowError)
        assert result.error.kind == ExecutionErrorKind.INVALID_WORKFLOW
        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_unregistered_node_type(self):
        graph = snapshot(
            [node("start", "start"), node("x", "teleporter")],
            [edge("start", "x")],
        )
        provider = MockLLMProvider()
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "x")

        assert isinstance(result.error, UnknownNodeTypeError)
        assert result.error.kind == ExecutionErrorKind.UNKNOWN_NODE_TYPE
        assert result.error.node_id == "x"
        assert result.error.node_type == "teleporter"
        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_execute_rejected(self):
        started = asyncio.Event()
        release = asyncio.Event()

        class BlockingProvider(PromptRoutedProvider):
            async def invoke(self, messages, model, options=None):
                started.set()
                await release.wait()
                return await super().invoke(messages, model, options)

        executor = WorkflowExecutor(BlockingProvider(default="late"))

        task = asyncio.create_task(executor.execute(linear_graph(), "x"))
        await started.wait()
        with pytest.raises(RuntimeError):
            await executor.execute(linear_graph(), "y")
        release.set()
        result = await task

        assert result.success


# === FAN-OUT ===


class TestParallelExecution:
    @pytest.mark.asyncio
    async def test_branches_merge_at_convergence(self):
        provider = PromptRoutedProvider({"You are A": "alpha", "You are B": "beta", "You are C": "merged"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(parallel_graph(), "go")

        assert result.success
        assert result.output == "merged"
        assert result.path.count("c") == 1
        fork_trace = next(t for t in result.trace if t.node_id == "fork")
        assert fork_trace.output == "## Branch 1\nalpha\n\n## Branch 2\nbeta"
        assert set(fork_trace.metadata["branches"]) == {"branch-1", "branch-2"}

    @pytest.mark.asyncio
    async def test_branch_traces_carry_branch_id(self):
        provider = PromptRoutedProvider()
        executor = WorkflowExecutor(provider)

        result = await executor.execute(parallel_graph(), "go")

        by_node = {t.node_id: t for t in result.trace}
        assert by_node["a"].branch_id == "branch-1"
        assert by_node["b"].branch_id == "branch-2"
        assert by_node["c"].branch_id is None

    @pytest.mark.asyncio
    async def test_failed_branch_continues_with_error_marker(self):
        provider = PromptRoutedProvider(
            {"You are A": "alpha", "You are B": RuntimeError("boom"), "You are C": "summary"}
        )
        executor = WorkflowExecutor(provider)

        result = await executor.execute(parallel_graph(), "go")

        assert result.success
        by_node = {t.node_id: t for t in result.trace}
        assert by_node["b"].status == NodeStatus.FAILED
        assert "[Error] boom" in by_node["c"].input
        assert "alpha" in by_node["c"].input
        assert result.output == "summary"

    @pytest.mark.asyncio
    async def test_fail_fast_aborts_run(self):
        provider = PromptRoutedProvider({"You are B": RuntimeError("boom")})
        executor = WorkflowExecutor(provider, options=ExecutionOptions(fail_fast=True))

        result = await executor.execute(parallel_graph(), "go")

        assert result.state == ExecutionState.FAILED
        assert "boom" in str(result.error)
        assert "c" not in result.path

    @pytest.mark.asyncio
    async def test_merge_prompt_calls_model(self):
        graph = parallel_graph()
        graph.get_node("fork").data["prompt"] = "Merge these"
        provider = PromptRoutedProvider({"Merge these": "combined", "You are A": "alpha", "You are B": "beta"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "go")

        fork_trace = next(t for t in result.trace if t.node_id == "fork")
        assert fork_trace.output == "combined"
        merge_request = next(msgs for msgs, _, _ in provider.requests if msgs[0]["content"] == "Merge these")
        assert "## Branch 1\nalpha" in merge_request[1]["content"]

    @pytest.mark.asyncio
    async def test_branch_overrides_apply_to_first_node(self):
        graph = parallel_graph()
        graph.get_node("fork").data["branches"] = [
            {"id": "branch-1", "label": "Left", "prompt": "You are overridden"},
            {"id": "branch-2", "label": "Right"},
        ]
        provider = PromptRoutedProvider({"You are overridden": "custom"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "go")

        fork_trace = next(t for t in result.trace if t.node_id == "fork")
        assert fork_trace.output.startswith("## Left\ncustom")

    @pytest.mark.asyncio
    async def test_branches_without_convergence_end_run(self):
        graph = snapshot(
            [node("start", "start"), node("fork", "parallel"), node("a", "agent"), node("b", "agent")],
            [edge("start", "fork"), edge("fork", "a", "branch-1"), edge("fork", "b", "branch-2")],
        )
        executor = WorkflowExecutor(PromptRoutedProvider(default="x"))

        result = await executor.execute(graph, "go")

        assert result.output == "## Branch 1\nx\n\n## Branch 2\nx"


# === RETRIES & ERROR MODES ===


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, fast_sleep):
        provider = MockLLMProvider([ProviderError("busy", transient=True), "recovered"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(linear_graph(), "x")

        assert result.output == "recovered"
        assert result.trace[1].retries == 1
        fast_sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, fast_sleep):
        provider = MockLLMProvider([ConnectionError("reset"), ConnectionError("reset"), "ok"])
        executor = WorkflowExecutor(provider, options=ExecutionOptions(max_retries=3))

        result = await executor.execute(linear_graph(), "x")

        assert result.success
        assert [c.args[0] for c in fast_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        provider = MockLLMProvider([ProviderError("busy", transient=True)] * 3)
        executor = WorkflowExecutor(provider, options=ExecutionOptions(max_retries=2))

        result = await executor.execute(linear_graph(), "x")

        assert result.state == ExecutionState.FAILED
        assert provider.call_count == 3
        assert result.error.node_id == "agent"

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        provider = MockLLMProvider([ProviderError("bad key", status_code=401)])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(linear_graph(), "x")

        assert result.state == ExecutionState.FAILED
        assert provider.call_count == 1
        assert result.trace[1].retries == 0

    @pytest.mark.asyncio
    async def test_node_retry_override(self, fast_sleep):
        graph = linear_graph()
        graph.get_node("agent").data["error_handling"] = {
            "mode": "stop",
            "retry": {"max_retries": 1, "base_delay": 0.5, "max_delay": 5},
        }
        provider = MockLLMProvider([TimeoutError(), TimeoutError(), "never"])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "x")

        assert result.state == ExecutionState.FAILED
        assert provider.call_count == 2
        fast_sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_failed_run_carries_partial_trace(self):
        provider = MockLLMProvider([ValueError("bad input")])
        executor = WorkflowExecutor(provider)

        result = await executor.execute(linear_graph(), "x")

        assert [t.node_id for t in result.error.trace] == ["start", "agent"]
        assert result.trace[-1].status == NodeStatus.FAILED
        assert result.trace[-1].error == "bad input"


class TestErrorModes:
    @pytest.mark.asyncio
    async def test_branch_mode_routes_to_error_edge(self):
        graph = snapshot(
            [
                node("start", "start"),
                node("agent", "agent", prompt="work", error_handling={"mode": "branch"}),
                node("fallback", "agent", prompt="recover"),
            ],
            [edge("start", "agent"), edge("agent", "fallback", "error")],
        )
        provider = PromptRoutedProvider({"work": RuntimeError("exploded"), "recover": "recovered"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "x")

        assert result.success
        assert result.output == "recovered"
        assert result.trace[2].input == "exploded"
        assert result.trace[1].next_handles == ["error"]

    @pytest.mark.asyncio
    async def test_branch_mode_without_error_edge_fails(self):
        graph = linear_graph()
        graph.get_node("agent").data["error_handling"] = {"mode": "branch"}
        executor = WorkflowExecutor(MockLLMProvider([RuntimeError("exploded")]))

        result = await executor.execute(graph, "x")

        assert result.state == ExecutionState.FAILED

    @pytest.mark.asyncio
    async def test_continue_mode_passes_empty_output(self):
        graph = snapshot(
            [
                node("start", "start"),
                node("a", "agent", prompt="first", error_handling={"mode": "continue"}),
                node("b", "agent", prompt="second"),
            ],
            [edge("start", "a"), edge("a", "b")],
        )
        provider = PromptRoutedProvider({"first": RuntimeError("nope"), "second": "carried on"})
        executor = WorkflowExecutor(provider)

        result = await executor.execute(graph, "x")

        assert result.success
        assert result.output == "carried on"
        assert result.trace[1].status == NodeStatus.FAILED
        assert result.trace[2].input == ""


class TestLimits:
    @pytest.mark.asyncio
    async def test_max_steps(self):
        graph = snapshot(
            [node("start", "start"), node("a", "agent", prompt="a"), node("b", "agent", prompt="b")],
            [edge("start", "a"), edge("a", "b"), edge("b", "a")],
        )
        executor = WorkflowExecutor(PromptRoutedProvider(), options=ExecutionOptions(max_steps=5))

        result = await executor.execute(graph, "x")

        assert isinstance(result.error, MaxStepsExceededError)
        assert len(result.trace) == 5


# === CANCELLATION ===


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_start(self):
        executor = WorkflowExecutor(MockLLMProvider(["unused"]))

        def on_finish(trace):
            if trace.node_id == "start":
                executor.cancel()

        options = ExecutionOptions(callbacks=ExecutionCallbacks(on_node_finish=on_finish))
        result = await executor.execute(linear_graph(), "x", options=options)

        assert result.state == ExecutionState.CANCELLED
        assert result.cancelled
        assert result.error is None
        assert result.path == ["start"]

    @pytest.mark.asyncio
    async def test_cancel_without_run(self):
        executor = WorkflowExecutor(MockLLMProvider())

        assert executor.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_during_stream(self):
        executor = WorkflowExecutor(MockLLMProvider(["streamed text"]))

        def on_token(node_id, chunk, branch_id):
            executor.cancel()

        options = ExecutionOptions(callbacks=ExecutionCallbacks(on_token=on_token))
        result = await executor.execute(linear_graph(), "x", options=options)

        assert result.state == ExecutionState.CANCELLED
        assert result.trace[-1].status == NodeStatus.CANCELLED


# === STREAMING & EVENTS ===


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_streaming_callbacks(self):
        tokens = []
        started = []
        states = []
        callbacks = ExecutionCallbacks(
            on_node_start=lambda node_id, branch_id: started.append(node_id),
            on_token=lambda node_id, chunk, branch_id: tokens.append((node_id, chunk)),
            on_state_change=states.append,
        )
        executor = WorkflowExecutor(MockLLMProvider(["hello"]), options=ExecutionOptions(callbacks=callbacks))

        await executor.execute(linear_graph(), "x")

        assert started == ["start", "agent"]
        assert tokens == [("agent", "hello")]
        assert states == [ExecutionState.RUNNING, ExecutionState.COMPLETED]

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        finished = []

        async def on_finish(trace):
            finished.append(trace.node_id)

        options = ExecutionOptions(callbacks=ExecutionCallbacks(on_node_finish=on_finish))
        executor = WorkflowExecutor(MockLLMProvider(["ok"]), options=options)

        await executor.execute(linear_graph(), "x")

        assert finished == ["start", "agent"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_run(self):
        def explode(*args):
            raise RuntimeError("callback bug")

        options = ExecutionOptions(callbacks=ExecutionCallbacks(on_node_start=explode, on_token=explode))
        executor = WorkflowExecutor(MockLLMProvider(["ok"]), options=options)

        result = await executor.execute(linear_graph(), "x")

        assert result.success

    @pytest.mark.asyncio
    async def test_no_tokens_when_streaming_disabled(self):
        tokens = []
        options = ExecutionOptions(
            stream=False,
            callbacks=ExecutionCallbacks(on_token=lambda *args: tokens.append(args)),
        )
        executor = WorkflowExecutor(MockLLMProvider(["ok"]), options=options)

        result = await executor.execute(linear_graph(), "x")

        assert result.output == "ok"
        assert tokens == []


class TestEventBusIntegration:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        bus = EventBus()
        executor = WorkflowExecutor(MockLLMProvider(["pong"]), event_bus=bus)

        result = await executor.execute(linear_graph(), "ping")

        types = [e.type for e in reversed(bus.get_history(run_id=result.run_id))]
        assert types[0] == EventType.EXECUTION_STARTED
        assert types[-1] == EventType.EXECUTION_COMPLETED
        assert types.count(EventType.NODE_STARTED) == 2
        assert EventType.EDGE_TRAVERSED in types
        assert EventType.LLM_TEXT_DELTA in types

    @pytest.mark.asyncio
    async def test_retry_and_failure_events(self):
        bus = EventBus()
        provider = MockLLMProvider([ProviderError("busy", transient=True)] * 3)
        executor = WorkflowExecutor(provider, options=ExecutionOptions(max_retries=2), event_bus=bus)

        await executor.execute(linear_graph(), "x")

        assert len(bus.get_history(EventType.NODE_RETRY)) == 2
        assert len(bus.get_history(EventType.NODE_FAILED)) == 1
        assert len(bus.get_history(EventType.EXECUTION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_branch_events(self):
        bus = EventBus()
        executor = WorkflowExecutor(PromptRoutedProvider(), event_bus=bus)

        await executor.execute(parallel_graph(), "x")

        started = bus.get_history(EventType.BRANCH_STARTED)
        assert {e.branch_id for e in started} == {"branch-1", "branch-2"}
        assert len(bus.get_history(EventType.BRANCH_COMPLETED)) == 2
