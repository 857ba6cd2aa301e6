"""Scripted LLM provider for tests and offline demos."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowgraph.llm.provider import (
    InvokeOptions,
    LLMProvider,
    LLMResponse,
    ModelCapabilities,
    TokenUsage,
    ToolUse,
    infer_capabilities,
)

logger = logging.getLogger(__name__)

Responder = Callable[[list[dict[str, Any]], str, InvokeOptions | None], "LLMResponse | str | Exception"]


@dataclass
class RecordedCall:
    messages: list[dict[str, Any]]
    model: str
    options: InvokeOptions | None = None


@dataclass
class MockLLMProvider(LLMProvider):
    """
    Returns scripted responses in order.

    Each scripted item may be a string (plain answer), an LLMResponse, an
    exception instance (raised), or a callable ``(messages, model, options)``
    returning any of those. When the script runs out, ``default`` is used.

    Example:
        provider = MockLLMProvider(["first answer", ProviderError("busy", transient=True)])
    """

    responses: list[Any] = field(default_factory=list)
    default: str = "mock response"
    capabilities: dict[str, ModelCapabilities] = field(default_factory=dict)
    calls: list[RecordedCall] = field(default_factory=list)

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def invoke(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions | None = None,
    ) -> LLMResponse:
        self.calls.append(RecordedCall([dict(m) for m in messages], model, options))
        item: Any = self.responses.pop(0) if self.responses else self.default
        if callable(item) and not isinstance(item, LLMResponse):
            item = item(messages, model, options)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            return item
        text = str(item)
        return LLMResponse(
            content=text,
            model=model,
            usage=TokenUsage(input_tokens=sum(len(str(m.get("content") or "")) for m in messages) // 4, output_tokens=len(text) // 4),
            stop_reason="stop",
        )

    async def get_capabilities(self, model: str) -> ModelCapabilities:
        return self.capabilities.get(model) or infer_capabilities(model)


def tool_call_response(name: str, arguments: dict[str, Any], call_id: str = "call_1", content: str = "") -> LLMResponse:
    """An LLMResponse asking for one tool call."""
    return LLMResponse(
        content=content,
        model="mock",
        tool_calls=[ToolUse(id=call_id, name=name, input=arguments)],
        stop_reason="tool_calls",
    )
