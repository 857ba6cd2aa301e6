"""
Workflow graph data model.

Nodes and edges are what the editor mutates and what a snapshot stores.
A node's ``data`` is a free-form dict; its shape is checked against the
payload model of the node type's extension (see ``NodeData`` subclasses in
``flowgraph.graph.nodes``) whenever the editor writes it.

Examples:
    WorkflowNode(id="agent-1", type="agent", data={"label": "Writer", "prompt": "Be terse"})

    WorkflowEdge(
        id="e-router-billing",
        source="router-1",
        target="billing",
        source_handle="route-billing",
    )
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from flowgraph.graph.hitl import HITLConfig

SCHEMA_VERSION = "2.0.0"

# Handles shared by every node type
DEFAULT_HANDLE = "output"
ERROR_HANDLE = "error"
REJECTED_HANDLE = "rejected"


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class WorkflowNode(BaseModel):
    """A typed unit of work on the canvas."""

    id: str
    type: str = Field(description="Registered extension name, e.g. 'agent'")
    position: Position = Field(default_factory=Position)
    data: dict[str, Any] = Field(default_factory=dict)
    selected: bool = False
    version: int = Field(default=1, description="Bumped on every mutation of this node")

    model_config = {"extra": "allow"}

    @property
    def label(self) -> str:
        label = self.data.get("label")
        return label if isinstance(label, str) and label else self.id


class WorkflowEdge(BaseModel):
    """A directed connection, optionally bound to named handles."""

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = Field(
        default=None, description="Output port on the source; None means 'output'"
    )
    target_handle: str | None = None
    label: str | None = Field(default=None, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)
    selected: bool = False
    version: int = 1

    model_config = {"extra": "allow"}

    @property
    def handle(self) -> str:
        return self.source_handle or DEFAULT_HANDLE

    def connection_key(self) -> tuple[str, str | None, str, str | None]:
        return (self.source, self.source_handle, self.target, self.target_handle)


class WorkflowMeta(BaseModel):
    version: str = SCHEMA_VERSION
    name: str = "Untitled Workflow"
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"extra": "allow"}


class WorkflowSnapshot(BaseModel):
    """Serializable graph: what storage adapters save and executors run."""

    meta: WorkflowMeta = Field(default_factory=WorkflowMeta)
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str, handle: str | None = None) -> list[WorkflowEdge]:
        return [
            e for e in self.edges if e.source == node_id and (handle is None or e.handle == handle)
        ]

    def get_incoming_edges(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self.edges if e.target == node_id]

    def touch(self) -> None:
        now = datetime.now(UTC)
        self.meta.updated_at = now
        if self.meta.created_at is None:
            self.meta.created_at = now


def is_version_compatible(version: str, current: str = SCHEMA_VERSION) -> bool:
    """Same major version means the snapshot can be loaded as-is."""
    try:
        return int(version.split(".")[0]) == int(current.split(".")[0])
    except (ValueError, IndexError):
        return False


# ---------------------------------------------------------------------------
# Payload pieces shared by every node type
# ---------------------------------------------------------------------------


class ErrorMode(StrEnum):
    STOP = "stop"  # fail the run
    CONTINUE = "continue"  # carry on with empty output
    BRANCH = "branch"  # follow the node's 'error' handle


class RetryConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    base_delay: float = Field(default=1.0, ge=0, description="Seconds before the first retry")
    max_delay: float = Field(default=30.0, ge=0)


class ErrorHandlingConfig(BaseModel):
    mode: ErrorMode = ErrorMode.STOP
    retry: RetryConfig | None = None


class NodeData(BaseModel):
    """Fields every node type accepts. Subclassed per node type."""

    label: str = Field(default="", max_length=200)
    description: str | None = None
    hitl: HITLConfig | None = None
    error_handling: ErrorHandlingConfig | None = None

    model_config = {"extra": "allow"}
