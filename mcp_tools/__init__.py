"""MCP Tools - The tool interface and plugin registry shared by all plugins."""

from mcp_tools.interfaces import ToolInterface

from config import env

# Import plugin system
from mcp_tools.plugin import (
    register_tool,
    registry,
    discover_and_register_tools,
    PluginRegistry,
)

__version__ = "0.1.0"

__all__ = [
    "ToolInterface",
    "env",
    "register_tool",
    "registry",
    "discover_and_register_tools",
    "PluginRegistry",
]
