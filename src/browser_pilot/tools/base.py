"""
Base types for remote tools.
"""

from dataclasses import dataclass, field
from typing import Any

from ..llm.base import ToolDefinition

TIMEOUT_MARKER = "may have completed"

# Keys that could be used for prototype pollution on a JavaScript tool server
UNSAFE_ARGUMENT_KEYS = frozenset({"__proto__", "constructor", "prototype"})


@dataclass(frozen=True)
class ToolCatalogEntry:
    """A tool advertised by the remote provider."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mcp(cls, tool: Any) -> "ToolCatalogEntry":
        """Build an entry from an ``mcp.types.Tool``."""
        return cls(
            name=tool.name,
            description=tool.description or f"Tool: {tool.name}",
            input_schema=dict(tool.inputSchema or {"type": "object", "properties": {}}),
        )

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.input_schema,
        )


@dataclass
class ToolResult:
    """Result from a remote tool call.

    ``content`` holds MCP content items as plain dicts, e.g.
    ``{"type": "text", "text": "..."}``.
    """

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    timed_out: bool = False

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolResult":
        return cls(content=[{"type": "text", "text": text}], is_error=is_error)

    @classmethod
    def timeout(cls, tool_name: str) -> "ToolResult":
        """Non-error result for a call that timed out but may have run."""
        result = cls.from_text(
            f"Tool {tool_name} timed out but {TIMEOUT_MARKER} successfully."
        )
        result.timed_out = True
        return result

    @property
    def text(self) -> str:
        return "\n".join(
            item.get("text", "") for item in self.content if item.get("type") == "text"
        )


def sanitize_arguments(arguments: Any) -> dict[str, Any]:
    """Drop prototype-pollution-style keys, recursively.

    Non-mapping arguments become an empty dict.
    """
    if not isinstance(arguments, dict):
        return {}
    return {
        key: _sanitize_value(value)
        for key, value in arguments.items()
        if key not in UNSAFE_ARGUMENT_KEYS
    }


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return sanitize_arguments(value)
    if isinstance(value, list):
        return [_sanitize_value(v) for v in value]
    return value


def convert_tools_to_definitions(tools: list[ToolCatalogEntry]) -> list[ToolDefinition]:
    """Convert catalog entries to the model's tool-definition shape."""
    return [tool.to_definition() for tool in tools]
