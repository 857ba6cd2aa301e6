"""Parallel node: selects every branch handle so the executor fans out."""

from pydantic import BaseModel, Field

from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue


class BranchDefinition(BaseModel):
    id: str
    label: str = ""
    model: str | None = None  # overrides the first node of the branch
    prompt: str | None = None

    def overrides(self) -> dict[str, str]:
        values = {"model": self.model, "prompt": self.prompt}
        return {k: v for k, v in values.items() if v}


def _default_branches() -> list[BranchDefinition]:
    return [
        BranchDefinition(id="branch-1", label="Branch 1"),
        BranchDefinition(id="branch-2", label="Branch 2"),
    ]


class ParallelNodeData(NodeData):
    model: str | None = None  # model for the merge call
    prompt: str | None = None  # merge instructions; plain concatenation when empty
    branches: list[BranchDefinition] = Field(default_factory=_default_branches)


class ParallelNode(NodeExtension):
    name = "parallel"
    label = "Parallel"
    data_model = ParallelNodeData
    outputs = (
        HandleSpec("branch-1", "Branch 1"),
        HandleSpec("branch-2", "Branch 2"),
    )

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        data, issues = self.check_data(node)
        if data is None:
            return issues
        if len(data.branches) < 2:
            issues.append(
                ValidationIssue.warning(
                    IssueCode.TOO_FEW_BRANCHES,
                    f"Parallel node \"{node.label}\" should have at least two branches",
                    node_id=node.id,
                )
            )
        connected = {e.handle for e in edges if e.source == node.id}
        for branch in data.branches:
            if branch.id not in connected:
                issues.append(
                    ValidationIssue.warning(
                        IssueCode.UNCONNECTED_HANDLE,
                        f"Branch \"{branch.label or branch.id}\" of \"{node.label}\" has no connected node",
                        node_id=node.id,
                    )
                )
        return issues

    def get_dynamic_outputs(self, node: WorkflowNode) -> list[HandleSpec]:
        branches = node.data.get("branches")
        if branches is None:
            return list(self.outputs)
        return [HandleSpec(b["id"], b.get("label") or b["id"]) for b in branches if "id" in b]

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: ParallelNodeData = ctx.data  # type: ignore[assignment]
        return NodeResult(
            output=ctx.input,
            next_handles=[b.id for b in data.branches],
            message_role=None,
            branch_labels={b.id: b.label for b in data.branches if b.label},
            branch_overrides={b.id: b.overrides() for b in data.branches if b.overrides()},
            merge_prompt=data.prompt or None,
            merge_model=data.model,
        )
