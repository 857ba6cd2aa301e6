"""
Validation engine - structural and semantic diagnostics for a workflow.

``validate_workflow`` is a pure function of (nodes, edges, registry): it never
mutates its inputs and returns the same result for the same graph. Every
check runs independently; nothing short-circuits.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from flowgraph.graph.models import WorkflowEdge, WorkflowNode

if TYPE_CHECKING:
    from flowgraph.graph.extension import ExtensionRegistry

logger = logging.getLogger(__name__)

START_NODE_TYPE = "start"


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class IssueCode(StrEnum):
    NO_START_NODE = "no_start_node"
    MULTIPLE_START_NODES = "multiple_start_nodes"
    DISCONNECTED_NODE = "disconnected_node"
    NO_INCOMING = "no_incoming"
    DANGLING_EDGE = "dangling_edge"
    UNKNOWN_NODE_TYPE = "unknown_node_type"
    CYCLE_DETECTED = "cycle_detected"
    EMPTY_PROMPT = "empty_prompt"
    MISSING_ROUTES = "missing_routes"
    TOO_FEW_BRANCHES = "too_few_branches"
    UNCONNECTED_HANDLE = "unconnected_handle"
    MISSING_CONFIG = "missing_config"
    INVALID_DATA = "invalid_data"
    EXTENSION_ERROR = "extension_error"
    OUTGOING_FROM_TERMINAL = "outgoing_from_terminal"
    NO_PLACEHOLDERS = "no_placeholders"
    INVALID_LIMIT = "invalid_limit"


@dataclass(frozen=True)
class ValidationIssue:
    severity: Severity
    code: IssueCode | str
    message: str
    node_id: str | None = None
    edge_id: str | None = None

    @classmethod
    def error(cls, code: IssueCode | str, message: str, **kwargs: Any) -> "ValidationIssue":
        return cls(Severity.ERROR, code, message, **kwargs)

    @classmethod
    def warning(cls, code: IssueCode | str, message: str, **kwargs: Any) -> "ValidationIssue":
        return cls(Severity.WARNING, code, message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": str(self.code),
            "message": self.message,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
        }


@dataclass
class ValidationResult:
    """Outcome of validate_workflow. Warnings never affect ``is_valid``."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    @property
    def issues(self) -> list[ValidationIssue]:
        return self.errors + self.warnings

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity == Severity.ERROR:
            self.errors.append(issue)
        else:
            self.warnings.append(issue)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
        }


def validate_workflow(
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
    registry: "ExtensionRegistry | None" = None,
) -> ValidationResult:
    """
    Validate a workflow graph.

    Args:
        nodes: Graph nodes
        edges: Graph edges
        registry: Extensions used for per-type checks; the built-in set when None

    Returns:
        ValidationResult with errors and warnings
    """
    if registry is None:
        from flowgraph.graph.extension import ExtensionRegistry

        registry = ExtensionRegistry.with_builtins()

    result = ValidationResult()
    node_ids = {n.id for n in nodes}
    live_edges = [e for e in edges if e.source in node_ids and e.target in node_ids]

    _check_start_nodes(nodes, result)
    _check_dangling_edges(edges, node_ids, result)
    _check_connectivity(nodes, live_edges, result)
    _check_node_types(nodes, live_edges, registry, result)
    _check_cycles(nodes, live_edges, result)

    return result


def _check_start_nodes(nodes: Sequence[WorkflowNode], result: ValidationResult) -> None:
    starts = [n for n in nodes if n.type == START_NODE_TYPE]
    if not starts:
        result.add(ValidationIssue.error(IssueCode.NO_START_NODE, "Workflow must have a Start node"))
    elif len(starts) > 1:
        for extra in starts[1:]:
            result.add(
                ValidationIssue.warning(
                    IssueCode.MULTIPLE_START_NODES,
                    f"Workflow has more than one Start node; '{extra.label}' makes the entry point ambiguous",
                    node_id=extra.id,
                )
            )


def _check_dangling_edges(
    edges: Sequence[WorkflowEdge], node_ids: set[str], result: ValidationResult
) -> None:
    for edge in edges:
        missing = [end for end in (edge.source, edge.target) if end not in node_ids]
        if missing:
            result.add(
                ValidationIssue.error(
                    IssueCode.DANGLING_EDGE,
                    f"Edge '{edge.id}' references missing node(s): {', '.join(missing)}",
                    edge_id=edge.id,
                )
            )


def _check_connectivity(
    nodes: Sequence[WorkflowNode], edges: list[WorkflowEdge], result: ValidationResult
) -> None:
    if len(nodes) <= 1:
        return

    incoming = {n.id: 0 for n in nodes}
    outgoing = {n.id: 0 for n in nodes}
    for edge in edges:
        outgoing[edge.source] += 1
        incoming[edge.target] += 1

    for node in nodes:
        if incoming[node.id] == 0 and outgoing[node.id] == 0:
            result.add(
                ValidationIssue.error(
                    IssueCode.DISCONNECTED_NODE,
                    f'Node "{node.label}" is not connected to the workflow',
                    node_id=node.id,
                )
            )
        elif incoming[node.id] == 0 and node.type != START_NODE_TYPE:
            result.add(
                ValidationIssue.warning(
                    IssueCode.NO_INCOMING,
                    f'Node "{node.label}" has no incoming connections',
                    node_id=node.id,
                )
            )


def _check_node_types(
    nodes: Sequence[WorkflowNode],
    edges: list[WorkflowEdge],
    registry: "ExtensionRegistry",
    result: ValidationResult,
) -> None:
    for node in nodes:
        extension = registry.get(node.type)
        if extension is None:
            result.add(
                ValidationIssue.error(
                    IssueCode.UNKNOWN_NODE_TYPE,
                    f"Node \"{node.label}\" has unregistered type '{node.type}'",
                    node_id=node.id,
                )
            )
            continue
        try:
            issues = extension.validate(node, edges)
        except Exception as e:
            logger.error(f"Extension '{node.type}' validate() raised for {node.id}: {e}")
            issues = [
                ValidationIssue.error(
                    IssueCode.EXTENSION_ERROR,
                    f"Validation of \"{node.label}\" failed: {e}",
                    node_id=node.id,
                )
            ]
        for issue in issues:
            result.add(issue)


def _check_cycles(
    nodes: Sequence[WorkflowNode], edges: list[WorkflowEdge], result: ValidationResult
) -> None:
    adjacency: dict[str, list[str]] = {n.id: [] for n in nodes}
    for edge in edges:
        adjacency[edge.source].append(edge.target)

    cycle_node = _find_cycle(adjacency)
    if cycle_node is not None:
        result.add(
            ValidationIssue.warning(
                IssueCode.CYCLE_DETECTED,
                "Workflow contains a cycle, which may cause infinite loops",
                node_id=cycle_node,
            )
        )


def _find_cycle(adjacency: dict[str, list[str]]) -> str | None:
    """Iterative three-color DFS; returns a node on a cycle, if any."""
    WHITE, GRAY, BLACK = 0, 1, 2
    color = dict.fromkeys(adjacency, WHITE)

    for root in adjacency:
        if color[root] != WHITE:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = GRAY
        while stack:
            node_id, index = stack[-1]
            children = adjacency[node_id]
            if index < len(children):
                stack[-1] = (node_id, index + 1)
                child = children[index]
                if color[child] == GRAY:
                    return child
                if color[child] == WHITE:
                    color[child] = GRAY
                    stack.append((child, 0))
            else:
                color[node_id] = BLACK
                stack.pop()
    return None
