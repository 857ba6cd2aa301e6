"""LLM provider abstraction and implementations."""

from flowgraph.llm.mock import MockLLMProvider
from flowgraph.llm.openai_compat import OpenAICompatibleProvider
from flowgraph.llm.provider import (
    InvokeOptions,
    LLMProvider,
    LLMResponse,
    ModelCapabilities,
    TokenUsage,
    Tool,
    ToolResult,
    ToolUse,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "InvokeOptions",
    "ModelCapabilities",
    "TokenUsage",
    "Tool",
    "ToolUse",
    "ToolResult",
    "OpenAICompatibleProvider",
    "MockLLMProvider",
]
