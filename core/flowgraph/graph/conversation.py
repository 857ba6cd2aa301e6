"""Conversation state shared by the nodes of one run, plus context compaction.

The executor owns one ``Conversation`` per run. Parallel branches work on
``fork()`` copies so a branch never sees its siblings' turns.

Compaction keeps long runs inside the model's context window: once the
injected ``TokenCounter`` reports that an outbound request would exceed the
threshold, everything but system messages and the most recent turns is
replaced with a single summary message.
"""

from __future__ import annotations

import copy
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]: "


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "system" | "user" | "assistant" | "tool"
    content: str
    node_id: str | None = None
    tool_use_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    is_error: bool = False
    is_summary: bool = False

    def to_llm_dict(self) -> dict[str, Any]:
        """Convert to the chat-completion message shape."""
        if self.role == "tool":
            return {"role": "tool", "tool_call_id": self.tool_use_id, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            return {"role": "assistant", "content": self.content or None, "tool_calls": self.tool_calls}
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.node_id is not None:
            d["node_id"] = self.node_id
        if self.tool_use_id is not None:
            d["tool_use_id"] = self.tool_use_id
        if self.tool_calls is not None:
            d["tool_calls"] = self.tool_calls
        if self.is_error:
            d["is_error"] = True
        if self.is_summary:
            d["is_summary"] = True
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            node_id=data.get("node_id"),
            tool_use_id=data.get("tool_use_id") or data.get("tool_call_id"),
            tool_calls=data.get("tool_calls"),
            is_error=data.get("is_error", False),
            is_summary=data.get("is_summary", False),
        )


class Conversation:
    """Ordered message list for one run (or one parallel branch)."""

    def __init__(self, messages: list[Message] | None = None):
        self._messages: list[Message] = list(messages or [])

    @classmethod
    def from_history(cls, history: list[dict[str, Any]] | None) -> Conversation:
        return cls([Message.from_dict(m) for m in history or []])

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def add(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    def add_user_message(self, content: str, node_id: str | None = None) -> Message:
        return self.add(Message(role="user", content=content, node_id=node_id))

    def add_assistant_message(
        self,
        content: str,
        node_id: str | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> Message:
        return self.add(
            Message(role="assistant", content=content, node_id=node_id, tool_calls=tool_calls)
        )

    def add_tool_result(
        self, tool_use_id: str, content: str, is_error: bool = False, node_id: str | None = None
    ) -> Message:
        return self.add(
            Message(
                role="tool",
                content=content,
                tool_use_id=tool_use_id,
                is_error=is_error,
                node_id=node_id,
            )
        )

    def last_content(self) -> str | None:
        return self._messages[-1].content if self._messages else None

    def fork(self) -> Conversation:
        """Independent deep copy for a parallel branch."""
        return Conversation(copy.deepcopy(self._messages))

    def to_llm_messages(self) -> list[dict[str, Any]]:
        return [m.to_llm_dict() for m in self._messages]

    def replace(self, messages: list[Message]) -> None:
        self._messages = list(messages)


# ---------------------------------------------------------------------------
# Token counting
# ---------------------------------------------------------------------------


@runtime_checkable
class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...

    def count_messages(self, messages: list[dict[str, Any]]) -> int: ...


DEFAULT_CONTEXT_LIMIT = 8192

MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "openai/gpt-4o": 128000,
    "openai/gpt-4o-mini": 128000,
    "openai/gpt-4-turbo": 128000,
    "openai/gpt-4": 8192,
    "openai/gpt-3.5-turbo": 16385,
    "openai/o1": 200000,
    "openai/o1-mini": 128000,
    "anthropic/claude-3-opus": 200000,
    "anthropic/claude-3-haiku": 200000,
    "anthropic/claude-3.5-sonnet": 200000,
    "anthropic/claude-3.5-haiku": 200000,
    "google/gemini-1.5-pro": 1000000,
    "google/gemini-1.5-flash": 1000000,
    "google/gemini-2.0-flash": 1000000,
    "meta-llama/llama-3.1-70b-instruct": 128000,
    "mistralai/mistral-large": 128000,
    "deepseek/deepseek-chat": 64000,
}

# Per-message role/format overhead added by chat templates
MESSAGE_OVERHEAD_TOKENS = 4


class ApproximateTokenCounter:
    """Character-based estimate (~4 chars per token). No tokenizer needed."""

    def __init__(self, chars_per_token: int = 4):
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token) if text else 0

    def count_messages(self, messages: list[dict[str, Any]]) -> int:
        total = 0
        for message in messages:
            content = message.get("content") or ""
            if isinstance(content, list):
                content = " ".join(
                    part.get("text", "") for part in content if isinstance(part, dict)
                )
            total += self.count(str(content)) + MESSAGE_OVERHEAD_TOKENS
        return total

    @staticmethod
    def get_context_limit(model: str) -> int:
        return MODEL_CONTEXT_LIMITS.get(model, DEFAULT_CONTEXT_LIMIT)


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


class CompactionStrategy(StrEnum):
    SUMMARIZE = "summarize"  # auxiliary model call
    TRUNCATE = "truncate"  # drop the oldest eligible messages


DEFAULT_SUMMARIZE_PROMPT = """Summarize the following conversation history concisely, preserving key information, decisions, and context that would be important for continuing the conversation:

{{messages}}

Provide a concise summary that captures the essential context."""

AUTO_THRESHOLD_MARGIN = 10000
MIN_AUTO_THRESHOLD = 1000


@dataclass
class CompactionConfig:
    enabled: bool = True
    threshold: int | str = "auto"  # token count, or "auto" (context limit - margin)
    preserve_recent: int = 5
    strategy: CompactionStrategy = CompactionStrategy.SUMMARIZE
    summarize_model: str | None = None
    summarize_prompt: str = DEFAULT_SUMMARIZE_PROMPT

    def resolve_threshold(self, context_limit: int) -> int:
        if self.threshold == "auto":
            return max(context_limit - AUTO_THRESHOLD_MARGIN, MIN_AUTO_THRESHOLD)
        return int(self.threshold)


@dataclass
class CompactionResult:
    compacted: bool
    tokens_before: int = 0
    tokens_after: int = 0
    messages_compacted: int = 0
    summary: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def format_messages_for_summary(messages: list[Message]) -> str:
    lines = []
    for m in messages:
        role = "Summary" if m.is_summary else m.role.capitalize()
        lines.append(f"{role}: {m.content}")
    return "\n\n".join(lines)


def _split_point(messages: list[Message], preserve_recent: int) -> int:
    """Index of the first preserved message.

    Moves backwards so a preserved tool result never loses the assistant
    turn that requested it.
    """
    split = max(len(messages) - preserve_recent, 0)
    while 0 < split < len(messages) and messages[split].role == "tool":
        split -= 1
    return split


async def compact_conversation(
    conversation: Conversation,
    config: CompactionConfig,
    counter: TokenCounter,
    threshold: int,
    summarize: Callable[[str], Awaitable[str]],
    extra_messages: list[dict[str, Any]] | None = None,
) -> CompactionResult:
    """
    Compact ``conversation`` in place if it exceeds ``threshold`` tokens.

    Args:
        conversation: Conversation to compact
        config: Strategy and preservation settings
        counter: Token counter
        threshold: Token budget for the outbound request
        summarize: Auxiliary model call, prompt in, summary out
        extra_messages: Request messages outside the conversation (system
            prompt, pending user turn) counted against the budget

    Returns:
        CompactionResult describing what happened
    """
    extra = extra_messages or []
    tokens_before = counter.count_messages(extra + conversation.to_llm_messages())
    if not config.enabled or tokens_before <= threshold:
        return CompactionResult(compacted=False, tokens_before=tokens_before, tokens_after=tokens_before)

    messages = conversation.messages
    split = _split_point(messages, config.preserve_recent)
    older, recent = messages[:split], messages[split:]
    pinned = [m for m in older if m.role == "system" and not m.is_summary]
    eligible = [m for m in older if m.role != "system" or m.is_summary]

    if not eligible:
        logger.debug("Compaction requested but nothing is eligible")
        return CompactionResult(compacted=False, tokens_before=tokens_before, tokens_after=tokens_before)

    summary: str | None = None
    if config.strategy == CompactionStrategy.SUMMARIZE:
        prompt = config.summarize_prompt.replace(
            "{{messages}}", format_messages_for_summary(eligible)
        )
        summary = (await summarize(prompt)).strip()
        replacement = [Message(role="system", content=f"{SUMMARY_PREFIX}{summary}", is_summary=True)]
    else:
        replacement = []

    conversation.replace(pinned + replacement + recent)
    tokens_after = counter.count_messages(extra + conversation.to_llm_messages())
    logger.info(
        f"🗜 Compacted {len(eligible)} messages ({config.strategy}): "
        f"{tokens_before} → {tokens_after} tokens"
    )
    return CompactionResult(
        compacted=True,
        tokens_before=tokens_before,
        tokens_after=tokens_after,
        messages_compacted=len(eligible),
        summary=summary,
        metadata={"strategy": config.strategy.value, "preserved": len(recent)},
    )
