"""
Tools module: remote tool providers reached over MCP.
"""

from .base import (
    ToolCatalogEntry,
    ToolResult,
    convert_tools_to_definitions,
    sanitize_arguments,
)
from .client import ConnectionState, MCPClient, normalize_endpoint
from .registry import ClientRegistry

__all__ = [
    "ToolCatalogEntry",
    "ToolResult",
    "convert_tools_to_definitions",
    "sanitize_arguments",
    "ConnectionState",
    "MCPClient",
    "normalize_endpoint",
    "ClientRegistry",
]
