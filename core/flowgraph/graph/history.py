"""
History Manager - bounded undo/redo over graph snapshot pairs.

Each editor command records the graph before and after it ran. Records with
the same (kind, target) arriving within the debounce window extend one
pending batch, so dragging a node for two seconds is a single undo step.
The pending batch is flushed into the undo stack when:

1. ``commit()`` is called explicitly
2. a record with a different (kind, target) arrives
3. a record arrives after the debounce window elapsed
4. ``undo()``/``redo()`` is requested

The window is checked lazily against an injectable clock.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from flowgraph.config import DEFAULT_HISTORY_DEBOUNCE_MS, DEFAULT_HISTORY_LIMIT
from flowgraph.graph.models import WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)

GraphState = tuple[list[WorkflowNode], list[WorkflowEdge]]


@dataclass
class HistoryEntry:
    """One undoable step: the graph before and after a (batched) command."""

    kind: str
    target: str | None
    before: GraphState
    after: GraphState
    started_at: float
    last_recorded_at: float
    commands: int = 1

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.kind, self.target)


class HistoryManager:
    def __init__(
        self,
        max_history: int = DEFAULT_HISTORY_LIMIT,
        debounce_ms: int = DEFAULT_HISTORY_DEBOUNCE_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.max_history = max_history
        self.debounce_ms = debounce_ms
        self._clock = clock
        self._undo: deque[HistoryEntry] = deque(maxlen=max_history)
        self._redo: deque[HistoryEntry] = deque(maxlen=max_history)
        self._pending: HistoryEntry | None = None

    @property
    def can_undo(self) -> bool:
        return self._pending is not None or bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def pending(self) -> HistoryEntry | None:
        return self._pending

    @property
    def undo_depth(self) -> int:
        return len(self._undo) + (1 if self._pending is not None else 0)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)

    def record(
        self,
        kind: str,
        target: str | None,
        before: GraphState,
        after: GraphState,
    ) -> None:
        """Record one successful command; clears the redo stack."""
        now = self._clock()
        self._redo.clear()

        pending = self._pending
        if pending is not None and pending.key == (kind, target) and not self._expired(pending, now):
            pending.after = after
            pending.last_recorded_at = now
            pending.commands += 1
            return

        self._flush()
        self._pending = HistoryEntry(
            kind=kind,
            target=target,
            before=before,
            after=after,
            started_at=now,
            last_recorded_at=now,
        )

    def commit(self) -> bool:
        """Flush the pending batch. Returns True if there was one."""
        return self._flush()

    def undo(self) -> HistoryEntry | None:
        """Pop the latest entry; the caller restores ``entry.before``."""
        self._flush()
        if not self._undo:
            return None
        entry = self._undo.pop()
        self._redo.append(entry)
        return entry

    def redo(self) -> HistoryEntry | None:
        """Pop the latest undone entry; the caller restores ``entry.after``."""
        self._flush()
        if not self._redo:
            return None
        entry = self._redo.pop()
        self._undo.append(entry)
        return entry

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
        self._pending = None

    def _expired(self, entry: HistoryEntry, now: float) -> bool:
        return (now - entry.last_recorded_at) * 1000 > self.debounce_ms

    def _flush(self) -> bool:
        if self._pending is None:
            return False
        if len(self._undo) == self.max_history:
            evicted = self._undo[0]
            logger.debug(f"History full, evicting oldest entry ({evicted.kind})")
        self._undo.append(self._pending)
        self._pending = None
        return True
