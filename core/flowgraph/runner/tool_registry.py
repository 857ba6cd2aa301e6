"""Tool registration and execution for agent and tool nodes."""

import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowgraph.llm.provider import Tool, ToolResult, ToolUse

logger = logging.getLogger(__name__)


@dataclass
class RegisteredTool:
    """A tool with its executor function (sync or async)."""

    tool: Tool
    executor: Callable[[dict], Any]


_ANNOTATION_TYPES = {
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}


class ToolRegistry:
    """
    Tools available to a run, keyed by name.

    Agent nodes list tool names in ``data.tools``; tool nodes name one tool
    in ``data.tool_id``. When the executor resolves a tool call it asks this
    registry first and only falls back to the caller's ``on_tool_call``
    callback for names that are not registered here.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition
            executor: Function that takes the tool input dict and returns a result
        """
        if name != tool.name:
            raise ValueError(f"Tool name mismatch: {name!r} != {tool.name!r}")
        self._tools[name] = RegisteredTool(tool=tool, executor=executor)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> Tool:
        """Register a plain (or async) function, deriving the schema from its signature."""
        tool_name = name or func.__name__
        tool_desc = description or inspect.getdoc(func) or f"Execute {tool_name}"

        properties: dict[str, Any] = {}
        required: list[str] = []
        for param_name, param in inspect.signature(func).parameters.items():
            if param_name in ("self", "cls"):
                continue
            param_type = _ANNOTATION_TYPES.get(param.annotation, "string")
            properties[param_name] = {"type": param_type}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc,
            parameters={"type": "object", "properties": properties, "required": required},
        )

        def executor(inputs: dict) -> Any:
            return func(**inputs)

        self.register(tool_name, tool, executor)
        return tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_registered_names(self) -> list[str]:
        return list(self._tools)

    def get_tools(self, names: list[str] | None = None) -> list[Tool]:
        """Tool definitions for ``names`` (all tools when None); unknown names are skipped."""
        if names is None:
            return [t.tool for t in self._tools.values()]
        tools = []
        for name in names:
            registered = self._tools.get(name)
            if registered is None:
                logger.warning(f"Tool '{name}' is not registered; leaving it out of the request")
                continue
            tools.append(registered.tool)
        return tools

    async def execute(self, tool_use: ToolUse) -> ToolResult:
        """Run a registered tool. Failures come back as error results, not exceptions."""
        registered = self._tools.get(tool_use.name)
        if registered is None:
            return ToolResult(
                tool_use_id=tool_use.id,
                content=f"Tool '{tool_use.name}' is not registered",
                is_error=True,
            )
        try:
            result = registered.executor(tool_use.input)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(f"Tool '{tool_use.name}' raised: {e}")
            return ToolResult(tool_use_id=tool_use.id, content=f"Error: {e}", is_error=True)
        if isinstance(result, ToolResult):
            return ToolResult(tool_use_id=tool_use.id, content=result.content, is_error=result.is_error)
        return ToolResult(tool_use_id=tool_use.id, content=stringify_tool_output(result))


def stringify_tool_output(result: Any) -> str:
    if isinstance(result, ToolResult):
        return result.content
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)
