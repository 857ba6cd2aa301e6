"""
Snapshot Store - persistence for workflow snapshots.

Editors hand ``WorkflowEditor.to_snapshot()`` to an adapter and load it back
with ``WorkflowEditor.load()``. File writes are atomic (temp file + rename)
so a crash mid-save never leaves a truncated workflow behind.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any

from pydantic import ValidationError

from flowgraph.graph.models import WorkflowSnapshot, is_version_compatible

logger = logging.getLogger(__name__)


class SnapshotFormatError(ValueError):
    """Stored data is not a loadable workflow snapshot."""


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Iterator[IO[str]]:
    """Write to a temp file in the target directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def export_snapshot(snapshot: WorkflowSnapshot, indent: int | None = 2) -> str:
    """Serialize a snapshot to JSON text."""
    return snapshot.model_dump_json(indent=indent)


def import_snapshot(data: str | bytes | dict[str, Any]) -> WorkflowSnapshot:
    """
    Parse JSON text (or an already-decoded dict) into a snapshot.

    Raises:
        SnapshotFormatError: malformed JSON or a payload that does not validate
    """
    try:
        payload = json.loads(data) if isinstance(data, str | bytes) else data
        snapshot = WorkflowSnapshot.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as e:
        raise SnapshotFormatError(f"Invalid workflow snapshot: {e}") from e
    if not is_version_compatible(snapshot.meta.version):
        logger.warning(f"⚠ Snapshot schema version {snapshot.meta.version} may not be compatible")
    return snapshot


class StorageAdapter(ABC):
    """Where a workflow lives between sessions."""

    @abstractmethod
    async def save(self, snapshot: WorkflowSnapshot) -> None: ...

    @abstractmethod
    async def load(self) -> WorkflowSnapshot | None:
        """The stored snapshot, or None when nothing has been saved."""

    async def clear(self) -> None:
        raise NotImplementedError


class InMemoryStorage(StorageAdapter):
    """Keeps a deep copy; handy for tests and ephemeral editors."""

    def __init__(self) -> None:
        self._snapshot: WorkflowSnapshot | None = None

    async def save(self, snapshot: WorkflowSnapshot) -> None:
        self._snapshot = snapshot.model_copy(deep=True)

    async def load(self) -> WorkflowSnapshot | None:
        return self._snapshot.model_copy(deep=True) if self._snapshot else None

    async def clear(self) -> None:
        self._snapshot = None


class JsonFileStorage(StorageAdapter):
    """
    One workflow per JSON file.

    Example:
        storage = JsonFileStorage(Path.home() / ".flowgraph" / "workflows" / "support.json")
        await storage.save(editor.to_snapshot())
        editor.load(await storage.load())
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def save(self, snapshot: WorkflowSnapshot) -> None:
        snapshot = snapshot.model_copy(deep=True)
        snapshot.touch()
        text = export_snapshot(snapshot)

        def _write() -> None:
            with atomic_write(self.path) as f:
                f.write(text)

        async with self._lock:
            await asyncio.to_thread(_write)
        logger.debug(f"Saved workflow '{snapshot.meta.name}' to {self.path}")

    async def load(self) -> WorkflowSnapshot | None:
        def _read() -> str | None:
            if not self.path.exists():
                return None
            return self.path.read_text(encoding="utf-8")

        async with self._lock:
            text = await asyncio.to_thread(_read)
        if text is None:
            return None
        snapshot = import_snapshot(text)
        logger.info(f"📂 Loaded workflow '{snapshot.meta.name}' from {self.path}")
        return snapshot

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self.path.unlink, True)
