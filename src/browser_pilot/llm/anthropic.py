"""
Anthropic Claude LLM provider.
"""

from typing import Any

import anthropic
import structlog

from ..errors import ModelAPIError
from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    TextContent,
    ToolCall,
    ToolDefinition,
    ToolResultContent,
)

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 2048,
        timeout: float = 120.0,
        client: Any = None,
    ):
        super().__init__(api_key, model, base_url, max_tokens, timeout)
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_part(self, part: Any) -> dict[str, Any]:
        if isinstance(part, TextContent):
            return {"type": "text", "text": part.text}
        if isinstance(part, ToolCall):
            return {
                "type": "tool_use",
                "id": part.id,
                "name": part.name,
                "input": part.arguments,
            }
        if isinstance(part, ToolResultContent):
            return {
                "type": "tool_result",
                "tool_use_id": part.tool_use_id,
                "content": part.content,
                "is_error": part.is_error,
            }
        raise TypeError(f"Unsupported content part: {type(part).__name__}")

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to Anthropic format."""
        converted = []

        for msg in messages:
            if isinstance(msg.content, str):
                converted.append({"role": msg.role, "content": msg.content})
            else:
                converted.append({
                    "role": msg.role,
                    "content": [self._convert_part(p) for p in msg.content],
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _parse_content(self, blocks: Any) -> list[Any]:
        content: list[Any] = []
        for block in blocks or []:
            if block.type == "text":
                content.append(TextContent(text=block.text))
            elif block.type == "tool_use":
                content.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=dict(block.input) if isinstance(block.input, dict) else {},
                ))
        return content

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": self._convert_messages(messages),
        }

        if system_prompt:
            kwargs["system"] = system_prompt

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIStatusError as e:
            logger.error("Anthropic API error", status_code=e.status_code, error=str(e))
            raise ModelAPIError(
                f"Anthropic API error: {e.status_code} - {e.message}",
                status_code=e.status_code,
            ) from e
        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise ModelAPIError(f"Anthropic API error: {e}") from e

        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=self._parse_content(response.content),
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            model=getattr(response, "model", self.model),
            stop_reason=getattr(response, "stop_reason", None),
            raw_response=response,
        )
