"""
flowgraph - headless editing and execution of LLM agent workflows.

Build a graph with ``WorkflowEditor`` (undoable commands, validation), then
run a snapshot of it with ``WorkflowExecutor`` against any ``LLMProvider``.
"""

from flowgraph.config import RuntimeConfig
from flowgraph.graph import (
    ExecutionOptions,
    ExecutionResult,
    ExecutionState,
    ExtensionRegistry,
    WorkflowEditor,
    WorkflowExecutor,
    WorkflowSnapshot,
    validate_workflow,
)
from flowgraph.llm import LLMProvider, MockLLMProvider, OpenAICompatibleProvider

__version__ = "0.1.0"

__all__ = [
    "RuntimeConfig",
    "WorkflowEditor",
    "WorkflowExecutor",
    "WorkflowSnapshot",
    "ExtensionRegistry",
    "ExecutionOptions",
    "ExecutionResult",
    "ExecutionState",
    "validate_workflow",
    "LLMProvider",
    "MockLLMProvider",
    "OpenAICompatibleProvider",
]
