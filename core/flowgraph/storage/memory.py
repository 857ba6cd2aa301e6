"""
Memory - long-lived notes that memory nodes store and recall.

``MemoryAdapter`` is the seam for a real backend (Redis, Postgres, a vector
store). ``InMemoryMemoryAdapter`` keeps entries in a dict and ranks them by
keyword overlap; it is meant for development and tests.
"""

import logging
import math
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 10

_STOP_WORDS = frozenset(
    """
    a an the and or but is are was were be been being have has had do does did
    will would could should may might must shall to of in for on with at by from
    as into through during before after above below up down out off over under
    again further then once here there when where why how all each few more most
    other some such no nor not only own same so than too very just can now i you
    he she it we they what which who this that these those am
    """.split()
)


class MemoryMetadata(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source: Literal["user", "agent", "system"] = "agent"
    node_id: str | None = None
    workflow_id: str | None = None
    session_id: str | None = None

    model_config = {"extra": "allow"}

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    def get(self, key: str) -> Any:
        return self.model_dump().get(key)


class MemoryEntry(BaseModel):
    id: str = Field(default_factory=lambda: f"mem_{uuid.uuid4().hex}")
    content: str
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)


@dataclass
class MemoryQuery:
    text: str | None = None
    limit: int | None = None
    filter: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


class MemoryAdapter(ABC):
    """Where memory nodes keep their entries."""

    @abstractmethod
    async def store(self, entry: MemoryEntry) -> None: ...

    @abstractmethod
    async def query(self, query: MemoryQuery) -> list[MemoryEntry]:
        """Entries matching ``query``, most relevant first."""

    @abstractmethod
    async def delete(self, entry_id: str) -> None: ...

    @abstractmethod
    async def clear(self, session_id: str | None = None) -> None:
        """Drop every entry, or only the entries of one session."""


def tokenize(text: str) -> list[str]:
    """Lowercased words longer than two characters, stop words removed."""
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in _STOP_WORDS]


def relevance(query_tokens: list[str], content: str) -> float:
    """
    Token overlap score normalized by query length.

    An exact token hit scores ``1 + ln(1 + freq)``; a prefix hit between
    tokens of at least four characters with 70% length overlap scores half.
    """
    if not query_tokens:
        return 0.0
    frequencies: dict[str, int] = {}
    for token in tokenize(content):
        frequencies[token] = frequencies.get(token, 0) + 1
    if not frequencies:
        return 0.0

    score = 0.0
    for token in query_tokens:
        if token in frequencies:
            score += 1 + math.log(1 + frequencies[token])
            continue
        for candidate, freq in frequencies.items():
            shorter, longer = sorted((len(token), len(candidate)))
            if shorter < 4:
                continue
            if (candidate.startswith(token) or token.startswith(candidate)) and shorter / longer >= 0.7:
                score += 0.5 * (1 + math.log(1 + freq))
                break
    return score / len(query_tokens)


class InMemoryMemoryAdapter(MemoryAdapter):
    """Keyword-ranked memory held in process."""

    def __init__(self) -> None:
        self._entries: dict[str, MemoryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def store(self, entry: MemoryEntry) -> None:
        self._entries[entry.id] = entry.model_copy(deep=True)

    async def query(self, query: MemoryQuery) -> list[MemoryEntry]:
        entries = list(self._entries.values())
        if query.session_id:
            entries = [e for e in entries if e.metadata.session_id == query.session_id]
        if query.filter:
            entries = [
                e for e in entries if all(e.metadata.get(k) == v for k, v in query.filter.items())
            ]

        if query.text:
            entries = self._rank(entries, query.text)
        else:
            entries.sort(key=lambda e: e.metadata.timestamp, reverse=True)

        limit = query.limit or DEFAULT_QUERY_LIMIT
        return [e.model_copy(deep=True) for e in entries[:limit]]

    @staticmethod
    def _rank(entries: list[MemoryEntry], text: str) -> list[MemoryEntry]:
        query_tokens = tokenize(text)
        needle = text.lower()
        now = datetime.now(UTC)

        scored: list[tuple[float, MemoryEntry]] = []
        for entry in entries:
            score = 10.0 if needle in entry.content.lower() else 0.0
            score += relevance(query_tokens, entry.content)
            if score <= 0:
                continue
            # Recency bonus decays to zero over a day
            hours = (now - entry.metadata.timestamp).total_seconds() / 3600
            score += max(0.0, 1 - hours / 24) * 0.5
            scored.append((score, entry))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [entry for _, entry in scored]

    async def delete(self, entry_id: str) -> None:
        self._entries.pop(entry_id, None)

    async def clear(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._entries.clear()
            return
        for entry_id in [i for i, e in self._entries.items() if e.metadata.session_id == session_id]:
            del self._entries[entry_id]
        logger.debug(f"Cleared memory for session {session_id}")
