"""
LLM module for the model API boundary.

Providers:
- Anthropic Claude (native SDK)
"""

from .base import (
    BaseLLM,
    ContentPart,
    LLMMessage,
    LLMResponse,
    TextContent,
    ToolCall,
    ToolDefinition,
    ToolResultContent,
    find_orphan_tool_results,
)
from .anthropic import AnthropicLLM
from .factory import create_llm

__all__ = [
    "BaseLLM",
    "ContentPart",
    "LLMMessage",
    "LLMResponse",
    "TextContent",
    "ToolCall",
    "ToolDefinition",
    "ToolResultContent",
    "find_orphan_tool_results",
    "AnthropicLLM",
    "create_llm",
]
