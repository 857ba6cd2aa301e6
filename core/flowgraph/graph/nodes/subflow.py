"""Subflow node: runs a registered workflow as one step of this one."""

import re
from typing import Any

from pydantic import Field

from flowgraph.graph.errors import NodeExecutionError
from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import DEFAULT_HANDLE, ERROR_HANDLE, NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.subflow import SubflowDefinition
from flowgraph.graph.validator import IssueCode, ValidationIssue

_TEMPLATE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


class SubflowNodeData(NodeData):
    subflow_id: str = ""
    input_mappings: dict[str, Any] = Field(default_factory=dict)
    share_session: bool = True


def resolve_mapping(value: Any, node_input: str, outputs: dict[str, str]) -> Any:
    """
    Expand ``{{input}}`` and ``{{outputs.<node_id>}}`` references.

    A value that is exactly one reference resolves to that value; references
    embedded in longer text are substituted as strings. Non-strings pass
    through untouched.
    """
    if not isinstance(value, str):
        return value

    def lookup(expr: str) -> str:
        if expr in ("input", "output"):
            return node_input
        if expr.startswith("outputs."):
            return outputs.get(expr[len("outputs.") :], "")
        return outputs.get(expr, "")

    return _TEMPLATE.sub(lambda m: lookup(m.group(1)), value)


class SubflowNode(NodeExtension):
    name = "subflow"
    label = "Subflow"
    data_model = SubflowNodeData
    outputs = (HandleSpec(DEFAULT_HANDLE, "Output"), HandleSpec(ERROR_HANDLE, "Error"))

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        data, issues = self.check_data(node)
        if data is not None and not data.subflow_id.strip():
            issues.append(
                ValidationIssue.error(
                    IssueCode.MISSING_CONFIG,
                    f"Subflow node \"{node.label}\" has no subflow selected",
                    node_id=node.id,
                )
            )
        return issues

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: SubflowNodeData = ctx.data  # type: ignore[assignment]
        services = ctx.services
        registry = services.options.subflows
        definition = registry.get(data.subflow_id) if registry else None
        if definition is None:
            raise NodeExecutionError(f"Subflow '{data.subflow_id}' not found in registry", ctx.node_id)

        missing = definition.missing_inputs(data.input_mappings)
        if missing:
            raise NodeExecutionError(
                f"Missing required inputs for subflow '{data.subflow_id}': {', '.join(missing)}",
                ctx.node_id,
            )

        subflow_input = self._primary_input(definition, data, ctx.input, services.outputs)
        output = await services.execute_subflow(definition, subflow_input, data.share_session)
        return NodeResult(
            output=output,
            message_role=None if data.share_session else "assistant",
            metadata={"subflow_id": definition.id},
        )

    @staticmethod
    def _primary_input(
        definition: SubflowDefinition,
        data: SubflowNodeData,
        node_input: str,
        outputs: dict[str, str],
    ) -> str:
        """The first declared input feeds the nested start node; the node input otherwise."""
        if not definition.inputs:
            mapping = data.input_mappings.get("input")
            return str(resolve_mapping(mapping, node_input, outputs)) if mapping is not None else node_input
        primary = definition.inputs[0]
        if primary.id in data.input_mappings:
            return str(resolve_mapping(data.input_mappings[primary.id], node_input, outputs))
        if primary.default is not None:
            return str(primary.default)
        return node_input
