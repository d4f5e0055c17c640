"""
Shared fixtures: an in-process stand-in for an MCP server.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

import pytest
from mcp.types import CallToolResult, ListToolsResult, TextContent, Tool

from browser_pilot.config import ConnectionConfig


def browser_tools() -> list[Tool]:
    return [
        Tool(
            name="browser_navigate",
            description="Navigate to a URL",
            inputSchema={"type": "object", "properties": {"url": {"type": "string"}}, "required": ["url"]},
        ),
        Tool(
            name="browser_click",
            description="Click an element",
            inputSchema={"type": "object", "properties": {"element": {"type": "string"}}},
        ),
        Tool(
            name="browser_snapshot",
            description=None,
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


class FakeSession:
    """Speaks the subset of ClientSession the client uses."""

    def __init__(self, server: "FakeMCPServer"):
        self.server = server

    async def list_tools(self) -> ListToolsResult:
        self.server.list_calls += 1
        if self.server.fail_list_calls > 0:
            self.server.fail_list_calls -= 1
            raise ConnectionError("stream closed")
        return ListToolsResult(tools=self.server.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        self.server.calls.append((name, arguments))
        if self.server.call_handler is not None:
            return await self.server.call_handler(name, arguments)
        return CallToolResult(content=[TextContent(type="text", text=f"{name} ok")])


class FakeMCPServer:
    """Hands out FakeSessions through a session factory."""

    def __init__(self, tools: list[Tool] | None = None, fail_first: int = 0, open_delay: float = 0.0):
        self.tools = tools if tools is not None else browser_tools()
        self.fail_first = fail_first
        self.open_delay = open_delay
        self.opened = 0
        self.closed = 0
        self.list_calls = 0
        self.fail_list_calls = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.call_handler: Callable[[str, dict[str, Any]], Awaitable[CallToolResult]] | None = None
        self.dropping = False
        self._holders: list[asyncio.Task] = []

    @asynccontextmanager
    async def session_factory(self, url: str, timeout: float):
        self.opened += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.opened <= self.fail_first:
            raise ConnectionError("Connection refused")
        holder = asyncio.current_task()
        self._holders.append(holder)
        try:
            yield FakeSession(self)
        except asyncio.CancelledError:
            # Surface a dropped stream the way the SDK task group does.
            if not self.dropping:
                raise
            self.dropping = False
            raise ConnectionError("SSE stream closed by server")
        finally:
            self._holders.remove(holder)
            self.closed += 1

    def drop(self) -> None:
        """End the most recent live stream from the server side."""
        self.dropping = True
        self._holders[-1].cancel()


@pytest.fixture
def connection_config() -> ConnectionConfig:
    return ConnectionConfig(
        max_retries=3,
        retry_delay=0.0,
        retry_jitter=0.0,
        connection_timeout=1.0,
        keepalive_interval=60.0,
        call_timeout=0.2,
        reconnect_cooldown=0.0,
        min_reconnect_interval=0.0,
        close_timeout=0.5,
    )


@pytest.fixture
def mcp_server() -> FakeMCPServer:
    return FakeMCPServer()


@pytest.fixture
def make_mcp_server() -> type[FakeMCPServer]:
    return FakeMCPServer
