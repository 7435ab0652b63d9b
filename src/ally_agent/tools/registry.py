"""Tool registry with plugin discovery."""

from __future__ import annotations

import copy
import logging
from importlib.metadata import entry_points
from typing import Any, Callable

from ally_agent.tools.base import FunctionTool, Tool
from ally_agent.types import ToolParameter, ToolResult

_logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "ally_agent.tools"


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep head and tail with a marker in between.

    Keeps the first 25% and the last 75% so trailing detail survives.
    """
    if len(text) <= max_length:
        return text
    head_size = max_length // 4
    tail_size = max_length - head_size
    omitted = len(text) - max_length
    return (
        text[:head_size]
        + f"\n\n... [{omitted} chars truncated] ...\n\n"
        + text[-tail_size:]
    )


class ToolRegistry:
    """Name to tool mapping with async dispatch.

    ``execute()`` never raises for tool problems: unknown tools and executor
    failures come back as unsuccessful :class:`ToolResult` values.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool instance, replacing any tool with the same name."""
        if tool.name in self._tools:
            _logger.debug("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        description: str,
        func: Callable[..., Any],
        parameters: list[ToolParameter] | None = None,
        max_output: int = 5000,
    ) -> Tool:
        """Wrap a plain callable as a tool and register it."""
        tool = FunctionTool(name, description, func, parameters, max_output)
        self.register(tool)
        return tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Look up a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_definitions(self) -> list[dict[str, Any]]:
        """Return OpenAI function-calling schemas for all registered tools."""
        return [t.to_openai_schema() for t in self._tools.values()]

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        call_id: str = "",
    ) -> ToolResult:
        """Execute a tool by name.

        The tool receives a copy of *arguments*.  Output longer than the
        tool's ``max_output`` is truncated.
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            _logger.warning("Model requested unknown tool %s", tool_name)
            return ToolResult(
                tool_name=tool_name,
                output=f"Tool '{tool_name}' not found",
                success=False,
                arguments=dict(arguments),
                call_id=call_id,
            )
        try:
            output = await tool.execute(**copy.deepcopy(arguments))
        except Exception as e:
            _logger.warning("Tool %s failed: %s: %s", tool_name, type(e).__name__, e)
            return ToolResult(
                tool_name=tool_name,
                output=f"Error executing tool: {e}",
                success=False,
                arguments=dict(arguments),
                call_id=call_id,
            )
        max_out = getattr(tool, "max_output", 5000)
        if max_out > 0 and len(output) > max_out:
            output = _smart_truncate(output, max_out)
        return ToolResult(
            tool_name=tool_name,
            output=output,
            success=True,
            arguments=dict(arguments),
            call_id=call_id,
        )

    def discover(self) -> None:
        """Load tools from the ``ally_agent.tools`` entry-point group.

        Each entry point should be a Tool instance, a Tool subclass (which
        will be instantiated) or a zero-argument callable returning a Tool.
        """
        for ep in entry_points(group=ENTRY_POINT_GROUP):
            try:
                obj = ep.load()
                if isinstance(obj, type) and issubclass(obj, Tool):
                    tool = obj()
                elif isinstance(obj, Tool):
                    tool = obj
                elif callable(obj):
                    tool = obj()
                else:
                    _logger.warning(
                        "Entry point %s did not return a Tool: %s", ep.name, type(obj)
                    )
                    continue
                if not isinstance(tool, Tool):
                    _logger.warning(
                        "Entry point %s produced %s, not a Tool", ep.name, type(tool)
                    )
                    continue
                self.register(tool)
                _logger.info("Discovered plugin tool: %s", tool.name)
            except Exception:
                _logger.exception("Failed to load tool plugin: %s", ep.name)
