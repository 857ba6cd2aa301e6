"""Shared fixtures: graph builders and a prompt-keyed fake provider."""

from typing import Any

import pytest

from flowgraph.graph.extension import ExtensionRegistry
from flowgraph.graph.models import WorkflowEdge, WorkflowNode, WorkflowSnapshot
from flowgraph.llm.provider import InvokeOptions, LLMProvider, LLMResponse, TokenUsage


class PromptRoutedProvider(LLMProvider):
    """
    Answers by looking up the system prompt of each request.

    ``answers`` maps a system prompt (or a substring of it) to a string, an
    LLMResponse, or an exception to raise. Unmatched prompts get ``default``.
    Deterministic under concurrency, unlike a positional script.
    """

    def __init__(self, answers: dict[str, Any] | None = None, default: str = "ok"):
        self.answers = answers or {}
        self.default = default
        self.requests: list[tuple[list[dict[str, Any]], str, InvokeOptions | None]] = []

    async def invoke(self, messages, model, options=None):
        self.requests.append(([dict(m) for m in messages], model, options))
        system = next((m["content"] for m in messages if m["role"] == "system"), "")
        answer: Any = self.default
        for key, value in self.answers.items():
            if key and key in system:
                answer = value
                break
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, LLMResponse):
            return answer
        return LLMResponse(
            content=str(answer),
            model=model,
            usage=TokenUsage(input_tokens=10, output_tokens=5),
            stop_reason="stop",
        )


def node(node_id: str, node_type: str, **data: Any) -> WorkflowNode:
    data.setdefault("label", node_id)
    return WorkflowNode(id=node_id, type=node_type, data=data)


def edge(source: str, target: str, handle: str | None = None) -> WorkflowEdge:
    suffix = f"-{handle}" if handle else ""
    return WorkflowEdge(id=f"e-{source}-{target}{suffix}", source=source, target=target, source_handle=handle)


def snapshot(nodes: list[WorkflowNode], edges: list[WorkflowEdge]) -> WorkflowSnapshot:
    return WorkflowSnapshot(nodes=nodes, edges=edges)


@pytest.fixture
def registry() -> ExtensionRegistry:
    return ExtensionRegistry.with_builtins()
