"""Output node: shapes the final result of a run. Terminal; nothing follows it."""

import json
import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


class OutputFormat(StrEnum):
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"


class OutputNodeData(NodeData):
    format: OutputFormat = OutputFormat.TEXT
    template: str | None = None
    include_metadata: bool = False


def template_placeholders(template: str) -> list[str]:
    return _PLACEHOLDER.findall(template)


def interpolate_template(template: str, outputs: dict[str, str]) -> str:
    """Replace ``{{node_id}}`` with that node's output; unknown ids stay as written."""
    return _PLACEHOLDER.sub(lambda m: outputs.get(m.group(1), m.group(0)), template)


def format_output(
    content: str,
    fmt: OutputFormat,
    include_metadata: bool = False,
    node_chain: list[str] | None = None,
    timestamp: str | None = None,
) -> str:
    """
    Render ``content`` in the requested format.

    JSON content is parsed and re-dumped; anything else is wrapped as
    ``{"result": content}``. With metadata, the node chain and a timestamp
    are added: a wrapper object for JSON, front matter for markdown and a
    bracketed header for text.
    """
    chain = node_chain or []
    timestamp = timestamp or datetime.now(UTC).isoformat()

    if fmt == OutputFormat.JSON:
        try:
            parsed: Any = json.loads(content)
        except json.JSONDecodeError:
            parsed = {"result": content}
        else:
            if include_metadata:
                parsed = {"result": parsed}
        if include_metadata:
            parsed["metadata"] = {"node_chain": chain, "timestamp": timestamp}
        return json.dumps(parsed, indent=2)

    if not include_metadata:
        return content
    if fmt == OutputFormat.MARKDOWN:
        return f"---\nnode_chain: [{', '.join(chain)}]\ntimestamp: {timestamp}\n---\n\n{content}"
    return f"[Executed: {' → '.join(chain)}]\n[Time: {timestamp}]\n\n{content}"


class OutputNode(NodeExtension):
    name = "output"
    label = "Output"
    data_model = OutputNodeData
    outputs: tuple[HandleSpec, ...] = ()

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        data, issues = self.check_data(node)
        if any(e.source == node.id for e in edges):
            issues.append(
                ValidationIssue.warning(
                    IssueCode.OUTGOING_FROM_TERMINAL,
                    f"Output node \"{node.label}\" is terminal; its outgoing connections are never followed",
                    node_id=node.id,
                )
            )
        if data is not None and data.template and not template_placeholders(data.template):
            issues.append(
                ValidationIssue.warning(
                    IssueCode.NO_PLACEHOLDERS,
                    f"Output node \"{node.label}\" template has no {{{{node_id}}}} placeholders",
                    node_id=node.id,
                )
            )
        return issues

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: OutputNodeData = ctx.data  # type: ignore[assignment]
        content = ctx.input
        if data.template:
            content = interpolate_template(data.template, ctx.services.outputs)

        chain = ctx.services.path
        output = format_output(content, data.format, data.include_metadata, chain)
        return NodeResult(
            output=output,
            next_handles=[],
            message_role=None,
            metadata={"format": data.format.value, "node_chain": chain},
        )
