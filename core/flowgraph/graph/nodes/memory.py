"""Memory node: stores the incoming text, or recalls entries relevant to it."""

import logging
from enum import StrEnum
from typing import Any

from pydantic import Field

from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import DEFAULT_HANDLE, ERROR_HANDLE, NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue
from flowgraph.storage.memory import MemoryEntry, MemoryMetadata, MemoryQuery

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK = "No memories found."


class MemoryOperation(StrEnum):
    QUERY = "query"
    STORE = "store"


class MemoryNodeData(NodeData):
    operation: MemoryOperation = MemoryOperation.QUERY
    text: str | None = None  # replaces the node input when set
    limit: int = 5
    filter: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    fallback: str = DEFAULT_FALLBACK


def format_entries(entries: list[MemoryEntry]) -> str:
    lines = []
    for entry in entries:
        prefix = f"[{entry.metadata.timestamp.isoformat()}] "
        if entry.metadata.node_id:
            prefix += f"[{entry.metadata.node_id}] "
        lines.append(prefix + entry.content)
    return "\n".join(lines)


class MemoryNode(NodeExtension):
    name = "memory"
    label = "Memory"
    data_model = MemoryNodeData
    outputs = (HandleSpec(DEFAULT_HANDLE, "Output", "string"), HandleSpec(ERROR_HANDLE, "Error", "string"))

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        data, issues = self.check_data(node)
        if data is not None and data.operation == MemoryOperation.QUERY and data.limit <= 0:
            issues.append(
                ValidationIssue.error(
                    IssueCode.INVALID_LIMIT,
                    f"Memory node \"{node.label}\" needs a query limit above zero",
                    node_id=node.id,
                )
            )
        if not any(e.target == node.id for e in edges):
            issues.append(
                ValidationIssue.error(
                    IssueCode.NO_INCOMING,
                    f"Memory node \"{node.label}\" has no input to store or query with",
                    node_id=node.id,
                )
            )
        return issues

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: MemoryNodeData = ctx.data  # type: ignore[assignment]
        services = ctx.services
        content = data.text or ctx.input

        if data.operation == MemoryOperation.STORE:
            metadata = MemoryMetadata(
                **{
                    "node_id": ctx.node_id,
                    "workflow_id": services.graph.meta.name or None,
                    "session_id": services.session_id,
                    **data.metadata,
                }
            )
            entry = MemoryEntry(content=content, metadata=metadata)
            await services.memory.store(entry)
            logger.info(f"   💾 Stored memory {entry.id}")
            return NodeResult(output=content, message_role=None, metadata={"memory_id": entry.id})

        entries = await services.memory.query(
            MemoryQuery(text=content, limit=data.limit, filter=data.filter, session_id=services.session_id)
        )
        logger.info(f"   💾 Recalled {len(entries)} memories")
        if not entries:
            return NodeResult(output=data.fallback, message_role=None, metadata={"memory_hits": 0})
        return NodeResult(
            output=format_entries(entries),
            message_role=None,
            metadata={"memory_hits": len(entries)},
        )
