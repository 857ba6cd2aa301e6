"""Stream event types produced by ``LLMProvider.stream``.

A discriminated union of frozen dataclasses. The executor consumes these to
forward token and reasoning chunks to callbacks (tagged with node and branch
ids) while assembling the final text and tool calls of one model turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class TextDeltaEvent:
    """A chunk of answer text."""

    type: Literal["text_delta"] = "text_delta"
    content: str = ""
    snapshot: str = ""  # accumulated text so far


@dataclass(frozen=True)
class TextEndEvent:
    type: Literal["text_end"] = "text_end"
    full_text: str = ""


@dataclass(frozen=True)
class ReasoningDeltaEvent:
    """A chunk of reasoning/thinking content (never part of the answer)."""

    type: Literal["reasoning_delta"] = "reasoning_delta"
    content: str = ""


@dataclass(frozen=True)
class ToolCallEvent:
    """The model requested a tool call; arguments are fully assembled."""

    type: Literal["tool_call"] = "tool_call"
    tool_use_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinishEvent:
    type: Literal["finish"] = "finish"
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


@dataclass(frozen=True)
class StreamErrorEvent:
    """A provider-side error surfaced mid-stream."""

    type: Literal["error"] = "error"
    error: str = ""
    recoverable: bool = False


StreamEvent = (
    TextDeltaEvent
    | TextEndEvent
    | ReasoningDeltaEvent
    | ToolCallEvent
    | FinishEvent
    | StreamErrorEvent
)
