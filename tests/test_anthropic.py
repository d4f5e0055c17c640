"""
Tests for the Anthropic provider.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from browser_pilot.errors import ModelAPIError
from browser_pilot.llm import (
    AnthropicLLM,
    LLMMessage,
    TextContent,
    ToolCall,
    ToolDefinition,
    ToolResultContent,
    find_orphan_tool_results,
)

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _llm(create: AsyncMock) -> AnthropicLLM:
    client = MagicMock()
    client.messages.create = create
    return AnthropicLLM(api_key="test-key", model="claude-test", client=client)


def _response(*blocks) -> SimpleNamespace:
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=12, output_tokens=7),
        model="claude-test",
        stop_reason="tool_use",
    )


@pytest.mark.asyncio
async def test_generate_builds_request():
    """Messages, tools and the system prompt use the Messages API shape."""
    create = AsyncMock(return_value=_response(SimpleNamespace(type="text", text="ok")))
    llm = _llm(create)

    messages = [
        LLMMessage(role="user", content="open example.com"),
        LLMMessage(role="assistant", content=[
            TextContent(text="Opening"),
            ToolCall(id="t1", name="browser_navigate", arguments={"url": "https://example.com"}),
        ]),
        LLMMessage(role="user", content=[
            ToolResultContent(tool_use_id="t1", content=[{"type": "text", "text": "done"}]),
        ]),
    ]
    tools = [ToolDefinition(name="browser_navigate", description="Navigate", parameters={"type": "object"})]

    await llm.generate(messages, tools=tools, system_prompt="Be careful.")

    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "claude-test"
    assert kwargs["max_tokens"] == 2048
    assert kwargs["system"] == "Be careful."
    assert kwargs["tools"] == [
        {"name": "browser_navigate", "description": "Navigate", "input_schema": {"type": "object"}}
    ]
    assert kwargs["messages"][0] == {"role": "user", "content": "open example.com"}
    assert kwargs["messages"][1]["content"][1] == {
        "type": "tool_use",
        "id": "t1",
        "name": "browser_navigate",
        "input": {"url": "https://example.com"},
    }
    assert kwargs["messages"][2]["content"][0] == {
        "type": "tool_result",
        "tool_use_id": "t1",
        "content": [{"type": "text", "text": "done"}],
        "is_error": False,
    }


@pytest.mark.asyncio
async def test_generate_omits_optional_fields():
    """No system prompt or tools means neither key is sent."""
    create = AsyncMock(return_value=_response(SimpleNamespace(type="text", text="ok")))
    llm = _llm(create)

    await llm.generate([LLMMessage(role="user", content="hi")])

    kwargs = create.call_args.kwargs
    assert "system" not in kwargs
    assert "tools" not in kwargs


@pytest.mark.asyncio
async def test_generate_parses_content():
    """Text and tool_use blocks become typed parts."""
    create = AsyncMock(return_value=_response(
        SimpleNamespace(type="text", text="Let me click that."),
        SimpleNamespace(type="tool_use", id="t9", name="browser_click", input={"element": "OK"}),
    ))
    llm = _llm(create)

    response = await llm.generate([LLMMessage(role="user", content="click ok")])

    assert response.text == "Let me click that."
    assert response.tool_calls == [ToolCall(id="t9", name="browser_click", arguments={"element": "OK"})]
    assert response.input_tokens == 12
    assert response.output_tokens == 7
    assert response.stop_reason == "tool_use"


@pytest.mark.asyncio
async def test_status_error_becomes_model_error():
    """HTTP errors from the API are raised as ModelAPIError."""
    error = anthropic.InternalServerError(
        "Overloaded",
        response=httpx.Response(529, request=REQUEST),
        body=None,
    )
    llm = _llm(AsyncMock(side_effect=error))

    with pytest.raises(ModelAPIError) as exc_info:
        await llm.generate([LLMMessage(role="user", content="hi")])

    assert exc_info.value.status_code == 529
    assert "529" in str(exc_info.value)


@pytest.mark.asyncio
async def test_connection_error_becomes_model_error():
    """Transport failures are raised as ModelAPIError without a status."""
    llm = _llm(AsyncMock(side_effect=anthropic.APIConnectionError(request=REQUEST)))

    with pytest.raises(ModelAPIError) as exc_info:
        await llm.generate([LLMMessage(role="user", content="hi")])

    assert exc_info.value.status_code is None


def test_find_orphan_tool_results():
    """Results without a preceding request are reported."""
    messages = [
        LLMMessage(role="user", content=[ToolResultContent(tool_use_id="gone")]),
        LLMMessage(role="assistant", content=[ToolCall(id="t1", name="x", arguments={})]),
        LLMMessage(role="user", content=[ToolResultContent(tool_use_id="t1")]),
    ]
    assert find_orphan_tool_results(messages) == ["gone"]
