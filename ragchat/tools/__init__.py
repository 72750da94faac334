"""Tools for the conversational AI assistant."""

from ragchat.tools.registry import ToolsRegistry, get_tools_registry

__all__ = ["ToolsRegistry", "get_tools_registry"]
