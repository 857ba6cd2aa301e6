"""
Graph Store - node and edge collections with per-entity version counters.

The store does no policing beyond id bookkeeping: reference checks and
payload validation live in the command layer, start-node cardinality in the
validator. Only ``WorkflowEditor`` should call the mutating methods.
"""

from flowgraph.graph.models import WorkflowEdge, WorkflowNode, WorkflowSnapshot


class GraphStore:
    """Insertion-ordered node and edge maps."""

    def __init__(self) -> None:
        self._nodes: dict[str, WorkflowNode] = {}
        self._edges: dict[str, WorkflowEdge] = {}

    # === READS ===

    @property
    def nodes(self) -> list[WorkflowNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[WorkflowEdge]:
        return list(self._edges.values())

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return self._nodes.get(node_id)

    def get_edge(self, edge_id: str) -> WorkflowEdge | None:
        return self._edges.get(edge_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def edges_touching(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self._edges.values() if node_id in (e.source, e.target)]

    def find_edge(self, key: tuple[str, str | None, str, str | None]) -> WorkflowEdge | None:
        for edge in self._edges.values():
            if edge.connection_key() == key:
                return edge
        return None

    # === WRITES ===

    def add_node(self, node: WorkflowNode) -> None:
        self._nodes[node.id] = node

    def remove_node(self, node_id: str) -> WorkflowNode | None:
        return self._nodes.pop(node_id, None)

    def add_edge(self, edge: WorkflowEdge) -> None:
        self._edges[edge.id] = edge

    def remove_edge(self, edge_id: str) -> WorkflowEdge | None:
        return self._edges.pop(edge_id, None)

    @staticmethod
    def bump(entity: WorkflowNode | WorkflowEdge) -> None:
        entity.version += 1

    # === SNAPSHOTS ===

    def capture(self) -> tuple[list[WorkflowNode], list[WorkflowEdge]]:
        """Deep copy of the current graph, used for history entries."""
        return (
            [n.model_copy(deep=True) for n in self._nodes.values()],
            [e.model_copy(deep=True) for e in self._edges.values()],
        )

    def restore(self, nodes: list[WorkflowNode], edges: list[WorkflowEdge]) -> None:
        """
        Replace the graph with copies of ``nodes``/``edges``.

        Entities whose content differs from what is currently stored get a
        version above both the stored and the restored counter, so renderers
        keyed on version always notice the change.
        """
        restored_nodes: dict[str, WorkflowNode] = {}
        for node in nodes:
            copy = node.model_copy(deep=True)
            current = self._nodes.get(node.id)
            if current is not None:
                copy.version = current.version
                if _content(current) != _content(copy):
                    copy.version = max(current.version, node.version) + 1
            restored_nodes[copy.id] = copy

        restored_edges: dict[str, WorkflowEdge] = {}
        for edge in edges:
            copy = edge.model_copy(deep=True)
            current_edge = self._edges.get(edge.id)
            if current_edge is not None:
                copy.version = current_edge.version
                if _content(current_edge) != _content(copy):
                    copy.version = max(current_edge.version, edge.version) + 1
            restored_edges[copy.id] = copy

        self._nodes = restored_nodes
        self._edges = restored_edges

    def load(self, snapshot: WorkflowSnapshot) -> None:
        self._nodes = {n.id: n.model_copy(deep=True) for n in snapshot.nodes}
        self._edges = {e.id: e.model_copy(deep=True) for e in snapshot.edges}

    def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()


def _content(entity: WorkflowNode | WorkflowEdge) -> dict:
    return entity.model_dump(exclude={"version"})
