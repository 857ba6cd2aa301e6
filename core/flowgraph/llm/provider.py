"""LLM Provider abstraction for pluggable model backends."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TokenUsage:
    """Token accounting for one call, one node, or a whole run."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Tool:
    """A tool the model can use."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_llm_dict(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolUse:
    """A tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResult:
    """Result of executing a tool."""

    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass
class LLMResponse:
    """Response from one model call."""

    content: str
    model: str
    tool_calls: list[ToolUse] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: str = ""
    reasoning: str = ""
    raw_response: Any = None


@dataclass
class InvokeOptions:
    """Per-call generation settings."""

    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[Tool] | None = None
    tool_choice: str | dict[str, Any] | None = None


@dataclass
class ModelCapabilities:
    """What a model accepts and how much context it holds."""

    input_modalities: list[str] = field(default_factory=lambda: ["text"])
    output_modalities: list[str] = field(default_factory=lambda: ["text"])
    context_length: int = 8192

    def supports(self, modality: str) -> bool:
        return modality in self.input_modalities


_VISION_PATTERNS = ("gpt-4o", "gpt-4-turbo", "gpt-4-vision", "claude-3", "claude-sonnet", "gemini", "llava", "pixtral")
_AUDIO_PATTERNS = ("whisper", "audio", "gpt-4o-audio")
_CONTEXT_PATTERNS = (
    ("claude", 200000),
    ("gpt-4o", 128000),
    ("gpt-4-turbo", 128000),
    ("gemini-1.5", 1000000),
    ("gemini-2", 1000000),
    ("mistral-large", 128000),
    ("command-r", 128000),
)


def infer_capabilities(model: str) -> ModelCapabilities:
    """Guess capabilities from well-known model id fragments."""
    lowered = model.lower()
    capabilities = ModelCapabilities()
    if any(p in lowered for p in _VISION_PATTERNS):
        capabilities.input_modalities.append("image")
    if any(p in lowered for p in _AUDIO_PATTERNS):
        capabilities.input_modalities.append("audio")
    for pattern, context_length in _CONTEXT_PATTERNS:
        if pattern in lowered:
            capabilities.context_length = context_length
            break
    return capabilities


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any chat-completion backend.

    Messages use the OpenAI chat shape:
    ``{"role": "system"|"user"|"assistant"|"tool", "content": ..., ...}``.

    Implementations should handle:
    - API authentication
    - Request/response formatting
    - Mapping failures onto ProviderError(transient=...)
    """

    @abstractmethod
    async def invoke(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions | None = None,
    ) -> LLMResponse:
        """
        Generate one completion.

        Args:
            messages: Conversation in chat-completion format
            model: Model identifier (e.g. "openai/gpt-4o-mini")
            options: Temperature, token limit and tool definitions

        Returns:
            LLMResponse with text, requested tool calls and usage
        """

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions | None = None,
    ) -> AsyncIterator["StreamEvent"]:
        """
        Stream a completion as StreamEvents.

        Default implementation wraps invoke() with synthetic events.
        Subclasses SHOULD override for true streaming. Executing requested
        tools is the caller's job.
        """
        from flowgraph.llm.stream_events import (
            FinishEvent,
            ReasoningDeltaEvent,
            TextDeltaEvent,
            TextEndEvent,
            ToolCallEvent,
        )

        response = await self.invoke(messages, model, options)
        if response.reasoning:
            yield ReasoningDeltaEvent(content=response.reasoning)
        if response.content:
            yield TextDeltaEvent(content=response.content, snapshot=response.content)
        for call in response.tool_calls:
            yield ToolCallEvent(tool_use_id=call.id, tool_name=call.name, tool_input=call.input)
        yield TextEndEvent(full_text=response.content)
        yield FinishEvent(
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
        )

    async def get_capabilities(self, model: str) -> ModelCapabilities:
        """Capability metadata for ``model``; consulted before attaching media."""
        return infer_capabilities(model)


# Deferred import target for type annotation
from flowgraph.llm.stream_events import StreamEvent as StreamEvent  # noqa: E402, F401
