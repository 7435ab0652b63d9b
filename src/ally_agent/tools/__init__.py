"""Tool system: base classes, registry and companion tools."""

from ally_agent.tools.base import FunctionTool, Tool
from ally_agent.tools.companion import register_companion_tools
from ally_agent.tools.registry import ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolRegistry", "register_companion_tools"]
