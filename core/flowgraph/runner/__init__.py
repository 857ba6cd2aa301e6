"""Tool registration for workflow runs."""

from flowgraph.runner.tool_registry import RegisteredTool, ToolRegistry

__all__ = ["ToolRegistry", "RegisteredTool"]
