"""Tool node: calls one tool directly, without a model in between."""

import uuid
from typing import Any

from pydantic import Field

from flowgraph.graph.errors import ProviderError
from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import DEFAULT_HANDLE, ERROR_HANDLE, NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue
from flowgraph.llm.provider import ToolUse


class ToolNodeData(NodeData):
    tool_id: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolNode(NodeExtension):
    name = "tool"
    label = "Tool"
    data_model = ToolNodeData
    outputs = (HandleSpec(DEFAULT_HANDLE, "Output", "string"), HandleSpec(ERROR_HANDLE, "Error", "string"))

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        data, issues = self.check_data(node)
        if data is not None and not data.tool_id.strip():
            issues.append(
                ValidationIssue.error(
                    IssueCode.MISSING_CONFIG,
                    f"Tool node \"{node.label}\" has no tool selected",
                    node_id=node.id,
                )
            )
        return issues

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: ToolNodeData = ctx.data  # type: ignore[assignment]
        arguments = dict(data.arguments) if data.arguments else {"input": ctx.input}
        call = ToolUse(id=f"call_{uuid.uuid4().hex[:12]}", name=data.tool_id, input=arguments)

        result = await ctx.services.call_tool(call)
        if result.is_error:
            raise ProviderError(f"Tool '{data.tool_id}' failed: {result.content}", node_id=ctx.node_id)
        return NodeResult(
            output=result.content,
            message_role=None,
            tool_calls=[{**call.to_dict(), "result": result.content, "is_error": False}],
        )
