"""
Base classes for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Union


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM (a tool-invocation-request part)."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class TextContent:
    """A plain text part."""

    text: str


@dataclass
class ToolResultContent:
    """The result of a tool call, sent back to the LLM."""

    tool_use_id: str
    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False


ContentPart = Union[TextContent, ToolCall, ToolResultContent]


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentPart]

    @property
    def parts(self) -> list[ContentPart]:
        """Content as a list of parts."""
        if isinstance(self.content, str):
            return [TextContent(text=self.content)]
        return list(self.content)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    @property
    def tool_results(self) -> list[ToolResultContent]:
        return [p for p in self.parts if isinstance(p, ToolResultContent)]

    @property
    def text(self) -> str:
        return " ".join(p.text for p in self.parts if isinstance(p, TextContent))


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: list[ContentPart] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None

    @property
    def text(self) -> str:
        """Text blocks joined with a space."""
        return " ".join(
            p.text for p in self.content if isinstance(p, TextContent) and p.text
        )

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.content if isinstance(p, ToolCall)]


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 2048,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout = timeout

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM.

        Raises:
            ModelAPIError: if the model service rejects the request.
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass


def find_orphan_tool_results(messages: list[LLMMessage]) -> list[str]:
    """Return tool_use_ids of results that have no earlier matching tool call."""
    seen: set[str] = set()
    orphans = []
    for msg in messages:
        for part in msg.parts:
            if isinstance(part, ToolCall):
                seen.add(part.id)
            elif isinstance(part, ToolResultContent) and part.tool_use_id not in seen:
                orphans.append(part.tool_use_id)
    return orphans
