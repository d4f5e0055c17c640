"""
Tests for the HTTP API.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from browser_pilot.agent import IterationStart, ProgressEmitter
from browser_pilot.api.app import create_app, format_sse, progress_stream
from browser_pilot.config import Settings
from browser_pilot.errors import ModelAPIError
from browser_pilot.llm import LLMMessage


def _parse(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, anthropic_api_key="test-key")


@pytest.fixture
def agent() -> MagicMock:
    agent = MagicMock()
    agent.generate_response = AsyncMock(return_value="Done")
    return agent


@pytest.fixture
def registry() -> MagicMock:
    registry = MagicMock()
    registry.connected_count = 0
    registry.health_check = AsyncMock(return_value={"connected": True, "toolsCount": 3})
    registry.close = AsyncMock()
    return registry


def test_format_sse():
    """Events are framed as SSE data lines."""
    assert format_sse(IterationStart(iteration=2)) == 'data: {"type": "iteration_start", "iteration": 2}\n\n'


@pytest.mark.asyncio
async def test_progress_stream_lifecycle():
    """The stream starts with connected, relays events and unsubscribes on close."""
    emitter = ProgressEmitter()
    stream = progress_stream(emitter, "chat-1", heartbeat_interval=5)

    first = await stream.__anext__()
    assert _parse(first) == {"type": "connected", "chatId": "chat-1"}
    assert emitter.has_listener("chat-1")

    emitter.emit("chat-1", IterationStart(iteration=1))
    assert _parse(await stream.__anext__()) == {"type": "iteration_start", "iteration": 1}

    await stream.aclose()
    assert not emitter.has_listener("chat-1")


@pytest.mark.asyncio
async def test_progress_stream_heartbeat():
    """Idle streams send comment frames to keep the connection open."""
    emitter = ProgressEmitter()
    stream = progress_stream(emitter, "chat-1", heartbeat_interval=0.01)

    await stream.__anext__()
    assert await stream.__anext__() == ": keepalive\n\n"
    await stream.aclose()


def test_health(settings, agent, registry):
    """Health endpoint reports configuration state."""
    client = TestClient(create_app(settings, agent=agent, registry=registry))

    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["llm_configured"] is True
    assert data["agent_ready"] is True
    assert data["mcp_clients"] == 0


def test_starts_without_model_key(registry):
    """Without an API key the service still starts; generation is refused."""
    settings = Settings(_env_file=None, anthropic_api_key="")

    with TestClient(create_app(settings, registry=registry)) as client:
        health = client.get("/api/health")
        response = client.post(
            "/api/chat/chat-1/generate",
            json={"messages": [{"role": "user", "content": "hi"}]},
        )

    assert health.status_code == 200
    assert health.json()["llm_configured"] is False
    assert health.json()["agent_ready"] is False
    assert response.status_code == 503
    registry.close.assert_awaited_once()


def test_generate_agent_mode(settings, agent, registry):
    """Agent mode passes the endpoint and a progress channel to the agent."""
    emitter = ProgressEmitter()
    client = TestClient(create_app(settings, agent=agent, registry=registry, emitter=emitter))

    response = client.post(
        "/api/chat/chat-1/generate",
        json={
            "messages": [
                {"role": "user", "content": "go to example.com"},
                {"role": "assistant", "content": "Which page?"},
                {"role": "user", "content": "the home page"},
            ],
            "mode": "agent",
            "endpoint": "http://localhost:8931/sse",
        },
    )

    assert response.status_code == 200
    assert response.json() == {"response": "Done"}

    args, kwargs = agent.generate_response.call_args
    assert args[0] == [
        LLMMessage(role="user", content="go to example.com"),
        LLMMessage(role="assistant", content="Which page?"),
        LLMMessage(role="user", content="the home page"),
    ]
    assert kwargs["endpoint"] == "http://localhost:8931/sse"
    assert kwargs["chat_id"] == "chat-1"

    received = []
    emitter.subscribe("chat-1", received.append)
    kwargs["emit"](IterationStart(iteration=1))
    assert received == [IterationStart(iteration=1)]


def test_generate_ask_mode_ignores_endpoint(settings, agent, registry):
    """Ask mode never hands the agent an endpoint."""
    client = TestClient(create_app(settings, agent=agent, registry=registry))

    client.post(
        "/api/chat/chat-1/generate",
        json={
            "messages": [{"role": "user", "content": "what is MCP?"}],
            "mode": "ask",
            "endpoint": "http://localhost:8931/sse",
        },
    )

    assert agent.generate_response.call_args.kwargs["endpoint"] is None


def test_generate_model_error(settings, agent, registry):
    """Model service failures map to 502."""
    agent.generate_response = AsyncMock(side_effect=ModelAPIError("Anthropic API error: 500 - boom", 500))
    client = TestClient(create_app(settings, agent=agent, registry=registry))

    response = client.post(
        "/api/chat/chat-1/generate",
        json={"messages": [{"role": "user", "content": "hi"}]},
    )

    assert response.status_code == 502


def test_generate_requires_messages(settings, agent, registry):
    """An empty conversation is rejected."""
    client = TestClient(create_app(settings, agent=agent, registry=registry))

    response = client.post("/api/chat/chat-1/generate", json={"messages": []})

    assert response.status_code == 400
    agent.generate_response.assert_not_called()


def test_mcp_status(settings, agent, registry):
    """Status for an endpoint comes from the registry health check."""
    client = TestClient(create_app(settings, agent=agent, registry=registry))

    response = client.get("/api/mcp-status", params={"endpoint": "http://localhost:8931/sse"})

    assert response.json() == {"connected": True, "toolsCount": 3}
    registry.health_check.assert_awaited_once_with("http://localhost:8931/sse")


def test_mcp_status_without_endpoint(settings, agent, registry):
    """Without an endpoint the status explains what is missing."""
    client = TestClient(create_app(settings, agent=agent, registry=registry))

    response = client.get("/api/mcp-status")

    assert response.json() == {"connected": False, "toolsCount": 0, "error": "No MCP URL available"}
    registry.health_check.assert_not_called()
