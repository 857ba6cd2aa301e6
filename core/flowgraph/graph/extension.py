"""
Node extensions - the per-type behavior of workflow nodes.

An extension bundles everything the editor, validator and executor need to
know about one node type:

- ``data_model``: pydantic payload model the editor validates ``node.data`` against
- ``get_default_data()``: payload for freshly created nodes
- ``validate(node, edges)``: type-specific diagnostics
- ``execute(ctx)``: the async work done when the node is reached
- ``get_dynamic_outputs(node)``: named output handles used for routing

Extensions are collected in an ``ExtensionRegistry`` that callers create and
pass to the editor, validator and executor explicitly. Two editors with
different registries never see each other's node types.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from flowgraph.graph.models import DEFAULT_HANDLE, NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue

if TYPE_CHECKING:
    from flowgraph.graph.services import NodeServices


@dataclass(frozen=True)
class HandleSpec:
    """A named output port."""

    id: str
    label: str = ""
    data_type: str = "any"


@dataclass
class NodeResult:
    """
    What a node hands back to the executor.

    ``next_handles`` selects the outgoing edges to follow; more than one
    matching edge means the executor fans out. ``message_role`` controls how
    the output is appended to the conversation (None: not appended).
    """

    output: str
    next_handles: list[str] = field(default_factory=lambda: [DEFAULT_HANDLE])
    message_role: str | None = "assistant"
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # Fan-out settings (parallel nodes)
    branch_labels: dict[str, str] = field(default_factory=dict)  # handle -> heading
    branch_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)  # handle -> data
    merge_prompt: str | None = None
    merge_model: str | None = None


@dataclass
class NodeContext:
    """Everything a node sees while it executes."""

    node: WorkflowNode
    data: NodeData
    input: str
    services: "NodeServices"
    branch_id: str | None = None

    @property
    def node_id(self) -> str:
        return self.node.id


class NodeExtension(ABC):
    """Base class for node types."""

    name: str = ""
    label: str = ""
    data_model: type[NodeData] = NodeData
    outputs: tuple[HandleSpec, ...] = (HandleSpec(DEFAULT_HANDLE, "Output"),)
    allows_self_loop: bool = False

    def get_default_data(self) -> dict[str, Any]:
        defaults = self.data_model(label=self.label or self.name.replace("_", " ").title())
        return defaults.model_dump(mode="json", exclude_none=True)

    def parse_data(self, data: dict[str, Any]) -> NodeData:
        """Validate a payload; raises pydantic.ValidationError."""
        return self.data_model.model_validate(data)

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        return []

    def check_data(self, node: WorkflowNode) -> tuple[NodeData | None, list[ValidationIssue]]:
        """Parse ``node.data`` for validation; a bad payload becomes an INVALID_DATA error."""
        try:
            return self.parse_data(node.data), []
        except ValidationError as e:
            issue = ValidationIssue.error(
                IssueCode.INVALID_DATA,
                f"Node \"{node.label}\" has invalid data: {e.error_count()} problem(s)",
                node_id=node.id,
            )
            return None, [issue]

    @abstractmethod
    async def execute(self, ctx: NodeContext) -> NodeResult:
        """Run the node and pick the handles to continue through."""

    def get_dynamic_outputs(self, node: WorkflowNode) -> list[HandleSpec]:
        return list(self.outputs)


class ExtensionRegistry:
    """
    Name-keyed set of node extensions.

    Example:
        registry = ExtensionRegistry.with_builtins()
        registry.register(MyCustomNode())
        editor = WorkflowEditor(registry)
        executor = WorkflowExecutor(provider, registry)
    """

    def __init__(self, extensions: Iterable[NodeExtension] = ()):
        self._extensions: dict[str, NodeExtension] = {}
        for extension in extensions:
            self.register(extension)

    @classmethod
    def with_builtins(cls) -> "ExtensionRegistry":
        from flowgraph.graph.nodes import builtin_extensions

        return cls(builtin_extensions())

    def register(self, extension: NodeExtension, replace: bool = False) -> None:
        if not extension.name:
            raise ValueError(f"{type(extension).__name__} has no name")
        if extension.name in self._extensions and not replace:
            raise ValueError(f"Node type '{extension.name}' is already registered")
        self._extensions[extension.name] = extension

    def unregister(self, name: str) -> bool:
        return self._extensions.pop(name, None) is not None

    def get(self, name: str) -> NodeExtension | None:
        return self._extensions.get(name)

    def names(self) -> list[str]:
        return list(self._extensions)

    def __contains__(self, name: object) -> bool:
        return name in self._extensions

    def __iter__(self) -> Iterator[NodeExtension]:
        return iter(self._extensions.values())

    def __len__(self) -> int:
        return len(self._extensions)
