"""
Agent node - one LLM call, plus a tool loop when the model asks for tools.

The node sees the whole conversation so far. Tool calls are resolved through
NodeServices.call_tool; the intermediate assistant/tool turns stay local to
the node, only the final answer reaches the shared conversation.
"""

import json
import logging
from typing import Literal

from pydantic import Field

from flowgraph.config import DEFAULT_MAX_TOOL_ITERATIONS
from flowgraph.graph.errors import MaxToolIterationsExceededError
from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import (
    DEFAULT_HANDLE,
    ERROR_HANDLE,
    REJECTED_HANDLE,
    NodeData,
    WorkflowEdge,
    WorkflowNode,
)
from flowgraph.graph.validator import IssueCode, ValidationIssue
from flowgraph.llm.provider import InvokeOptions, Tool

logger = logging.getLogger(__name__)


class AgentNodeData(NodeData):
    model: str | None = None
    prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    tools: list[str] = Field(default_factory=list)
    max_tool_iterations: int = Field(default=DEFAULT_MAX_TOOL_ITERATIONS, gt=0)
    on_max_tool_iterations: Literal["error", "warning"] = "error"


def default_system_prompt(label: str) -> str:
    return f"You are a helpful assistant named {label}."


class AgentNode(NodeExtension):
    name = "agent"
    label = "Agent"
    data_model = AgentNodeData
    outputs = (
        HandleSpec(DEFAULT_HANDLE, "Output", "string"),
        HandleSpec(ERROR_HANDLE, "Error", "string"),
        HandleSpec(REJECTED_HANDLE, "Rejected", "string"),
    )

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        data, issues = self.check_data(node)
        if data is None:
            return issues
        if not (data.prompt or "").strip():
            issues.append(
                ValidationIssue.warning(
                    IssueCode.EMPTY_PROMPT,
                    f"Agent \"{node.label}\" has no system prompt configured",
                    node_id=node.id,
                )
            )
        return issues

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: AgentNodeData = ctx.data  # type: ignore[assignment]
        services = ctx.services
        model = data.model or services.default_model
        system_prompt = data.prompt or default_system_prompt(data.label or ctx.node.label)

        messages = await services.build_messages(system_prompt, ctx.input, model, attach_media=True)
        tools = self._resolve_tools(ctx, data)
        options = InvokeOptions(
            temperature=data.temperature,
            max_tokens=data.max_tokens,
            tools=tools or None,
        )

        tool_calls: list[dict] = []
        content = ""
        for _ in range(data.max_tool_iterations):
            response = await services.invoke(messages, model, options)
            content = response.content
            if not response.tool_calls:
                return NodeResult(output=content, tool_calls=tool_calls, metadata={"model": response.model})

            messages.append(
                {
                    "role": "assistant",
                    "content": response.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.input)},
                        }
                        for call in response.tool_calls
                    ],
                }
            )
            for call in response.tool_calls:
                result = await services.call_tool(call)
                tool_calls.append({**call.to_dict(), "result": result.content, "is_error": result.is_error})
                messages.append({"role": "tool", "tool_call_id": call.id, "content": result.content})

        if data.on_max_tool_iterations == "warning":
            logger.warning(
                f"⚠ {ctx.node.label} reached {data.max_tool_iterations} tool iterations; returning last content"
            )
            return NodeResult(
                output=f"Warning: Maximum tool iterations ({data.max_tool_iterations}) reached. Last content: {content}",
                tool_calls=tool_calls,
                metadata={"max_tool_iterations_reached": True},
            )
        raise MaxToolIterationsExceededError(data.max_tool_iterations, ctx.node_id)

    @staticmethod
    def _resolve_tools(ctx: NodeContext, data: AgentNodeData) -> list[Tool]:
        """Tool definitions for the node; names unknown to the registry go out bare."""
        if not data.tools:
            return []
        registry = ctx.services.options.tools
        tools = []
        for name in data.tools:
            registered = registry.get(name) if registry else None
            if registered is not None:
                tools.append(registered.tool)
            else:
                tools.append(Tool(name=name, description=f"Execute {name}"))
        return tools
