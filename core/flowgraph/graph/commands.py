"""
Command layer - the only sanctioned way to mutate a workflow graph.

Every public mutator on ``WorkflowEditor`` follows the same shape:

1. Check preconditions (ids exist, type registered, payload valid) and raise
   ``CommandError`` before touching anything
2. Capture the graph, mutate the store, bump version counters
3. Record the before/after pair with the history manager
4. Emit the specific editor event, then ``update``
"""

import logging
import uuid
from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from flowgraph.config import RuntimeConfig
from flowgraph.graph.errors import CommandError
from flowgraph.graph.events import EditorEvents, EditorEventType
from flowgraph.graph.extension import ExtensionRegistry, HandleSpec, NodeExtension
from flowgraph.graph.history import GraphState, HistoryManager
from flowgraph.graph.models import (
    SCHEMA_VERSION,
    Position,
    WorkflowEdge,
    WorkflowMeta,
    WorkflowNode,
    WorkflowSnapshot,
    is_version_compatible,
)
from flowgraph.graph.store import GraphStore
from flowgraph.graph.validator import ValidationResult, validate_workflow

logger = logging.getLogger(__name__)

DUPLICATE_OFFSET = 20.0
_UNSET: Any = object()


class CommandKind(StrEnum):
    CREATE_NODE = "create_node"
    DELETE_NODE = "delete_node"
    UPDATE_NODE_DATA = "update_node_data"
    SET_NODE_POSITION = "set_node_position"
    DUPLICATE_NODE = "duplicate_node"
    CREATE_EDGE = "create_edge"
    DELETE_EDGE = "delete_edge"
    UPDATE_EDGE_DATA = "update_edge_data"
    SELECTION = "selection"


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err["loc"]) or "data"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def _generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class WorkflowEditor:
    """
    Editing session over one workflow graph.

    Example:
        editor = WorkflowEditor(ExtensionRegistry.with_builtins())
        start = editor.create_node("start", Position(x=0, y=0))
        agent = editor.create_node("agent", Position(x=0, y=120), {"prompt": "Be terse"})
        editor.create_edge(start.id, agent.id)
        editor.undo()  # removes the edge
    """

    def __init__(
        self,
        registry: ExtensionRegistry | None = None,
        config: RuntimeConfig | None = None,
        history: HistoryManager | None = None,
        events: EditorEvents | None = None,
    ):
        self.registry = registry or ExtensionRegistry.with_builtins()
        if history is None:
            config = config or RuntimeConfig()
            history = HistoryManager(
                max_history=config.history_limit, debounce_ms=config.history_debounce_ms
            )
        self.history = history
        self.events = events or EditorEvents()
        self.store = GraphStore()
        self.meta = WorkflowMeta()

    # === READS ===

    @property
    def nodes(self) -> list[WorkflowNode]:
        return self.store.nodes

    @property
    def edges(self) -> list[WorkflowEdge]:
        return self.store.edges

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return self.store.get_node(node_id)

    def get_edge(self, edge_id: str) -> WorkflowEdge | None:
        return self.store.get_edge(edge_id)

    @property
    def selected_node_ids(self) -> list[str]:
        return [n.id for n in self.store.nodes if n.selected]

    @property
    def selected_edge_ids(self) -> list[str]:
        return [e.id for e in self.store.edges if e.selected]

    def get_dynamic_outputs(self, node_id: str) -> list[HandleSpec]:
        node = self._require_node(node_id)
        return self._require_extension(node.type).get_dynamic_outputs(node)

    def validate(self) -> ValidationResult:
        return validate_workflow(self.store.nodes, self.store.edges, self.registry)

    # === NODE COMMANDS ===

    def create_node(
        self,
        node_type: str,
        position: Position | dict[str, float] | None = None,
        data: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> WorkflowNode:
        extension = self._require_extension(node_type)
        node_id = node_id or _generate_id(node_type)
        if self.store.has_node(node_id):
            raise CommandError.invalid_payload(f"Node id already exists: {node_id}", node_id)
        payload = self._normalize_payload(extension, {**extension.get_default_data(), **(data or {})}, node_id)

        before = self.store.capture()
        node = WorkflowNode(
            id=node_id,
            type=node_type,
            position=_as_position(position),
            data=payload,
        )
        self.store.add_node(node)
        self._finish(CommandKind.CREATE_NODE, node_id, before, (EditorEventType.NODE_CREATE, {"node": node}))
        return node

    def delete_node(self, node_id: str) -> WorkflowNode:
        node = self._require_node(node_id)
        connected = self.store.edges_touching(node_id)

        before = self.store.capture()
        for edge in connected:
            self.store.remove_edge(edge.id)
        self.store.remove_node(node_id)

        events = [(EditorEventType.EDGE_DELETE, {"edge": edge}) for edge in connected]
        events.append((EditorEventType.NODE_DELETE, {"node": node, "edge_ids": [e.id for e in connected]}))
        self._finish(CommandKind.DELETE_NODE, node_id, before, *events)
        return node

    def update_node_data(self, node_id: str, data: dict[str, Any]) -> WorkflowNode:
        """Shallow-merge ``data`` into the node payload, then re-validate it."""
        node = self._require_node(node_id)
        extension = self._require_extension(node.type)
        payload = self._normalize_payload(extension, {**node.data, **data}, node_id)

        before = self.store.capture()
        node.data = payload
        self.store.bump(node)
        self._finish(
            CommandKind.UPDATE_NODE_DATA,
            node_id,
            before,
            (EditorEventType.NODE_UPDATE, {"node": node, "changes": sorted(data)}),
        )
        return node

    def set_node_position(self, node_id: str, position: Position | dict[str, float]) -> WorkflowNode:
        node = self._require_node(node_id)
        new_position = _as_position(position)

        before = self.store.capture()
        node.position = new_position
        self.store.bump(node)
        self._finish(
            CommandKind.SET_NODE_POSITION,
            node_id,
            before,
            (EditorEventType.NODE_UPDATE, {"node": node, "changes": ["position"]}),
        )
        return node

    def duplicate_node(self, node_id: str) -> WorkflowNode:
        """Clone a node (data deep-copied, offset position, fresh id) as one undo step."""
        original = self._require_node(node_id)

        before = self.store.capture()
        clone = original.model_copy(
            deep=True,
            update={
                "id": _generate_id(original.type),
                "position": Position(
                    x=original.position.x + DUPLICATE_OFFSET,
                    y=original.position.y + DUPLICATE_OFFSET,
                ),
                "selected": False,
                "version": 1,
            },
        )
        self.store.add_node(clone)
        self._finish(
            CommandKind.DUPLICATE_NODE,
            clone.id,
            before,
            (EditorEventType.NODE_CREATE, {"node": clone, "source_id": node_id}),
        )
        return clone

    # === EDGE COMMANDS ===

    def create_edge(
        self,
        source: str,
        target: str,
        source_handle: str | None = None,
        target_handle: str | None = None,
        label: str | None = None,
        data: dict[str, Any] | None = None,
        edge_id: str | None = None,
    ) -> WorkflowEdge:
        source_node = self._require_node(source)
        self._require_node(target)

        if source == target and not self._require_extension(source_node.type).allows_self_loop:
            raise CommandError.invalid_payload(
                f"Node type '{source_node.type}' does not allow self-loops", source
            )
        edge_id = edge_id or _generate_id("e")
        if self.store.get_edge(edge_id) is not None:
            raise CommandError.invalid_payload(f"Edge id already exists: {edge_id}", edge_id)
        try:
            edge = WorkflowEdge(
                id=edge_id,
                source=source,
                target=target,
                source_handle=source_handle,
                target_handle=target_handle,
                label=label,
                data=data or {},
            )
        except ValidationError as e:
            raise CommandError.invalid_payload(format_validation_error(e), edge_id) from e
        existing = self.store.find_edge(edge.connection_key())
        if existing is not None:
            raise CommandError.invalid_payload(
                f"An identical connection already exists: {existing.id}", existing.id
            )

        before = self.store.capture()
        self.store.add_edge(edge)
        self._finish(CommandKind.CREATE_EDGE, edge_id, before, (EditorEventType.EDGE_CREATE, {"edge": edge}))
        return edge

    def delete_edge(self, edge_id: str) -> WorkflowEdge:
        edge = self._require_edge(edge_id)

        before = self.store.capture()
        self.store.remove_edge(edge_id)
        self._finish(CommandKind.DELETE_EDGE, edge_id, before, (EditorEventType.EDGE_DELETE, {"edge": edge}))
        return edge

    def update_edge_data(
        self,
        edge_id: str,
        label: str | None = _UNSET,
        data: dict[str, Any] | None = None,
    ) -> WorkflowEdge:
        edge = self._require_edge(edge_id)
        changes: dict[str, Any] = {}
        if label is not _UNSET:
            changes["label"] = label
        if data is not None:
            changes["data"] = {**edge.data, **data}
        try:
            WorkflowEdge.model_validate({**edge.model_dump(), **changes})
        except ValidationError as e:
            raise CommandError.invalid_payload(format_validation_error(e), edge_id) from e

        before = self.store.capture()
        for key, value in changes.items():
            setattr(edge, key, value)
        self.store.bump(edge)
        self._finish(
            CommandKind.UPDATE_EDGE_DATA,
            edge_id,
            before,
            (EditorEventType.EDGE_UPDATE, {"edge": edge, "changes": sorted(changes)}),
        )
        return edge

    # === SELECTION COMMANDS ===

    def select_node(self, node_id: str, additive: bool = False) -> None:
        self._require_node(node_id)
        node_ids = set(self.selected_node_ids) | {node_id} if additive else {node_id}
        edge_ids = set(self.selected_edge_ids) if additive else set()
        self._apply_selection(node_ids, edge_ids)

    def select_edge(self, edge_id: str, additive: bool = False) -> None:
        self._require_edge(edge_id)
        node_ids = set(self.selected_node_ids) if additive else set()
        edge_ids = set(self.selected_edge_ids) | {edge_id} if additive else {edge_id}
        self._apply_selection(node_ids, edge_ids)

    def deselect_all(self) -> None:
        self._apply_selection(set(), set())

    def set_selection(self, node_ids: Iterable[str], edge_ids: Iterable[str] = ()) -> None:
        node_ids, edge_ids = set(node_ids), set(edge_ids)
        for node_id in node_ids:
            self._require_node(node_id)
        for edge_id in edge_ids:
            self._require_edge(edge_id)
        self._apply_selection(node_ids, edge_ids)

    def _apply_selection(self, node_ids: set[str], edge_ids: set[str]) -> None:
        before = self.store.capture()
        changed = False
        for node in self.store.nodes:
            selected = node.id in node_ids
            if node.selected != selected:
                node.selected = selected
                self.store.bump(node)
                changed = True
        for edge in self.store.edges:
            selected = edge.id in edge_ids
            if edge.selected != selected:
                edge.selected = selected
                self.store.bump(edge)
                changed = True
        if not changed:
            return
        self._finish(
            CommandKind.SELECTION,
            None,
            before,
            (
                EditorEventType.SELECTION_UPDATE,
                {"node_ids": self.selected_node_ids, "edge_ids": self.selected_edge_ids},
            ),
        )

    # === HISTORY ===

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    def commit_history(self) -> bool:
        return self.history.commit()

    def undo(self) -> bool:
        entry = self.history.undo()
        if entry is None:
            return False
        for event_type, payload in self._restore(entry.before):
            self.events.emit(event_type, **payload)
        self.events.emit(EditorEventType.UPDATE, command="undo", undone=entry.kind)
        return True

    def redo(self) -> bool:
        entry = self.history.redo()
        if entry is None:
            return False
        for event_type, payload in self._restore(entry.after):
            self.events.emit(event_type, **payload)
        self.events.emit(EditorEventType.UPDATE, command="redo", redone=entry.kind)
        return True

    def _restore(self, state: GraphState) -> list[tuple[EditorEventType, dict[str, Any]]]:
        """Swap in ``state`` and describe the difference as editor events."""
        old_nodes = {n.id: n for n in self.store.nodes}
        old_edges = {e.id: e for e in self.store.edges}
        old_selection = (self.selected_node_ids, self.selected_edge_ids)
        nodes, edges = state
        self.store.restore(nodes, edges)
        new_nodes = {n.id: n for n in self.store.nodes}
        new_edges = {e.id: e for e in self.store.edges}

        events: list[tuple[EditorEventType, dict[str, Any]]] = []
        removed_edges = [e for e in old_edges.values() if e.id not in new_edges]
        events.extend((EditorEventType.EDGE_DELETE, {"edge": e}) for e in removed_edges)
        for node in old_nodes.values():
            if node.id not in new_nodes:
                edge_ids = [e.id for e in removed_edges if node.id in (e.source, e.target)]
                events.append((EditorEventType.NODE_DELETE, {"node": node, "edge_ids": edge_ids}))

        for node in new_nodes.values():
            previous = old_nodes.get(node.id)
            if previous is None:
                events.append((EditorEventType.NODE_CREATE, {"node": node}))
            elif changes := _changed_fields(previous, node):
                events.append((EditorEventType.NODE_UPDATE, {"node": node, "changes": changes}))
        for edge in new_edges.values():
            previous_edge = old_edges.get(edge.id)
            if previous_edge is None:
                events.append((EditorEventType.EDGE_CREATE, {"edge": edge}))
            elif changes := _changed_fields(previous_edge, edge):
                events.append((EditorEventType.EDGE_UPDATE, {"edge": edge, "changes": changes}))

        selection = (self.selected_node_ids, self.selected_edge_ids)
        if selection != old_selection:
            events.append(
                (EditorEventType.SELECTION_UPDATE, {"node_ids": selection[0], "edge_ids": selection[1]})
            )
        return events

    # === SNAPSHOTS ===

    def load(self, snapshot: WorkflowSnapshot | dict[str, Any]) -> None:
        """Replace the whole graph; history starts over."""
        if isinstance(snapshot, dict):
            snapshot = WorkflowSnapshot.model_validate(snapshot)
        if not is_version_compatible(snapshot.meta.version):
            logger.warning(
                f"Workflow '{snapshot.meta.name}' has schema version {snapshot.meta.version}, "
                f"current is {SCHEMA_VERSION}. Loading anyway."
            )
        self.store.load(snapshot)
        self.meta = snapshot.meta.model_copy(deep=True)
        self.history.clear()
        logger.info(
            f"📂 Loaded workflow '{self.meta.name}' "
            f"({len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges)"
        )
        self.events.emit(EditorEventType.UPDATE, command="load")

    def to_snapshot(self) -> WorkflowSnapshot:
        nodes, edges = self.store.capture()
        meta = self.meta.model_copy(deep=True, update={"version": SCHEMA_VERSION})
        return WorkflowSnapshot(meta=meta, nodes=nodes, edges=edges)

    # === INTERNALS ===

    def _finish(
        self,
        kind: CommandKind,
        target: str | None,
        before: GraphState,
        *events: tuple[EditorEventType, dict[str, Any]],
    ) -> None:
        self.history.record(kind.value, target, before, self.store.capture())
        for event_type, payload in events:
            self.events.emit(event_type, **payload)
        self.events.emit(EditorEventType.UPDATE, command=kind.value)

    def _require_node(self, node_id: str) -> WorkflowNode:
        node = self.store.get_node(node_id)
        if node is None:
            raise CommandError.not_found("Node", node_id)
        return node

    def _require_edge(self, edge_id: str) -> WorkflowEdge:
        edge = self.store.get_edge(edge_id)
        if edge is None:
            raise CommandError.not_found("Edge", edge_id)
        return edge

    def _require_extension(self, node_type: str) -> NodeExtension:
        extension = self.registry.get(node_type)
        if extension is None:
            raise CommandError.invalid_type(node_type)
        return extension

    @staticmethod
    def _normalize_payload(extension: NodeExtension, payload: dict[str, Any], node_id: str) -> dict[str, Any]:
        try:
            parsed = extension.parse_data(payload)
        except ValidationError as e:
            raise CommandError.invalid_payload(format_validation_error(e), node_id) from e
        return parsed.model_dump(mode="json", exclude_none=True)


def _as_position(position: Position | dict[str, float] | None) -> Position:
    if position is None:
        return Position()
    if isinstance(position, Position):
        return position.model_copy()
    try:
        return Position.model_validate(position)
    except ValidationError as e:
        raise CommandError.invalid_payload(format_validation_error(e)) from e


def _changed_fields(before: WorkflowNode | WorkflowEdge, after: WorkflowNode | WorkflowEdge) -> list[str]:
    """Changed field names, with ``data`` expanded to its keys; selection is reported separately."""
    old = before.model_dump(exclude={"version", "selected"})
    new = after.model_dump(exclude={"version", "selected"})
    changes: set[str] = set()
    for key in old.keys() | new.keys():
        if old.get(key) == new.get(key):
            continue
        if key == "data" and isinstance(old.get(key), dict) and isinstance(new.get(key), dict):
            changes.update(k for k in old[key].keys() | new[key].keys() if old[key].get(k) != new[key].get(k))
        else:
            changes.add(key)
    return sorted(changes)
