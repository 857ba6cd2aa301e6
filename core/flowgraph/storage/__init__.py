"""Snapshot persistence and node memory."""

from flowgraph.storage.memory import (
    InMemoryMemoryAdapter,
    MemoryAdapter,
    MemoryEntry,
    MemoryMetadata,
    MemoryQuery,
)
from flowgraph.storage.snapshot_store import (
    InMemoryStorage,
    JsonFileStorage,
    SnapshotFormatError,
    StorageAdapter,
    export_snapshot,
    import_snapshot,
)

__all__ = [
    "StorageAdapter",
    "InMemoryStorage",
    "JsonFileStorage",
    "SnapshotFormatError",
    "export_snapshot",
    "import_snapshot",
    "MemoryAdapter",
    "InMemoryMemoryAdapter",
    "MemoryEntry",
    "MemoryMetadata",
    "MemoryQuery",
]
