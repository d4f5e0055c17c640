"""
Tests for the client registry.
"""

import asyncio

import pytest

from browser_pilot.errors import ToolConnectionError
from browser_pilot.tools import ClientRegistry, MCPClient
from browser_pilot.tools.client import ConnectionState

ENDPOINT = "http://localhost:8931/sse"


def _registry(config, server, **kwargs) -> ClientRegistry:
    return ClientRegistry(
        config,
        client_factory=lambda: MCPClient(config, session_factory=server.session_factory),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_get_connects_and_caches(connection_config, mcp_server):
    """The first get connects; later gets reuse the client."""
    registry = _registry(connection_config, mcp_server)

    first = await registry.get(ENDPOINT)
    second = await registry.get(ENDPOINT)

    assert first is second
    assert first.is_connected
    assert mcp_server.opened == 1
    assert len(registry) == 1
    assert registry.connected_count == 1
    await registry.close()


@pytest.mark.asyncio
async def test_concurrent_get_connects_once(connection_config, make_mcp_server):
    """Concurrent first use of an endpoint shares one connection attempt."""
    server = make_mcp_server(open_delay=0.05)
    registry = _registry(connection_config, server)

    clients = await asyncio.gather(*(registry.get(ENDPOINT) for _ in range(5)))

    assert server.opened == 1
    assert all(c is clients[0] for c in clients)
    await registry.close()


@pytest.mark.asyncio
async def test_concurrent_get_shares_failure(connection_config, make_mcp_server):
    """Callers waiting on a failed connect all see the error."""
    server = make_mcp_server(fail_first=100, open_delay=0.01)
    registry = _registry(connection_config, server)

    results = await asyncio.gather(
        *(registry.get(ENDPOINT) for _ in range(3)),
        return_exceptions=True,
    )

    assert all(isinstance(r, ToolConnectionError) for r in results)
    assert server.opened == connection_config.max_retries
    assert len(registry) == 0
    await registry.close()


@pytest.mark.asyncio
async def test_disconnected_client_is_replaced(connection_config, mcp_server):
    """A cached client that lost its connection is swapped for a new one."""
    registry = _registry(connection_config, mcp_server)

    first = await registry.get(ENDPOINT)
    await first.disconnect()
    second = await registry.get(ENDPOINT)

    assert second is not first
    assert second.is_connected
    assert mcp_server.opened == 2
    await registry.close()


@pytest.mark.asyncio
async def test_get_rejects_empty_endpoint(connection_config, mcp_server):
    """An empty endpoint is rejected."""
    registry = _registry(connection_config, mcp_server)

    with pytest.raises(ValueError):
        await registry.get("")

    await registry.close()


@pytest.mark.asyncio
async def test_equivalent_endpoints_share_client(connection_config, mcp_server):
    """Spellings of the same endpoint resolve to one client."""
    registry = _registry(connection_config, mcp_server)

    bare = await registry.get("localhost:8931/sse")
    full = await registry.get(" http://localhost:8931/sse ")

    assert bare is full
    assert mcp_server.opened == 1
    assert len(registry) == 1
    assert registry.get_cached("localhost:8931/sse") is bare

    await registry.disconnect("localhost:8931/sse")
    assert len(registry) == 0
    assert not bare.is_connected
    await registry.close()


@pytest.mark.asyncio
async def test_evict_idle(connection_config, mcp_server):
    """Clients idle past the timeout are disconnected and dropped."""
    registry = _registry(connection_config, mcp_server, idle_timeout=0)

    client = await registry.get(ENDPOINT)
    evicted = await registry.evict_idle()

    assert evicted == [ENDPOINT]
    assert client.state is ConnectionState.DISCONNECTED
    assert registry.get_cached(ENDPOINT) is None
    await registry.close()


@pytest.mark.asyncio
async def test_active_clients_are_not_evicted(connection_config, mcp_server):
    """Recently used clients survive the sweep."""
    registry = _registry(connection_config, mcp_server, idle_timeout=3600)

    await registry.get(ENDPOINT)

    assert await registry.evict_idle() == []
    assert registry.connected_count == 1
    await registry.close()


@pytest.mark.asyncio
async def test_close_disconnects_everything(connection_config, mcp_server):
    """Closing the registry disconnects every client."""
    registry = _registry(connection_config, mcp_server)
    a = await registry.get(ENDPOINT)
    b = await registry.get("http://localhost:9000/sse")

    await registry.close()

    assert not a.is_connected
    assert not b.is_connected
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_close_abandons_connect_in_progress(connection_config, make_mcp_server):
    """A connect still in flight when the registry closes is cancelled and cleaned up."""
    server = make_mcp_server(open_delay=0.2)
    registry = _registry(connection_config, server)

    getter = asyncio.create_task(registry.get(ENDPOINT))
    await asyncio.sleep(0.05)
    await registry.close()

    with pytest.raises(asyncio.CancelledError):
        await getter

    assert len(registry) == 0
    assert registry._pending == {}
    assert server.opened == 1
    assert server.closed == server.opened


@pytest.mark.asyncio
async def test_health_check_connected(connection_config, mcp_server):
    """Health check reports the tool count of a live connection."""
    registry = _registry(connection_config, mcp_server)

    status = await registry.health_check(ENDPOINT)

    assert status == {"connected": True, "toolsCount": 3}
    await registry.close()


@pytest.mark.asyncio
async def test_health_check_failure(connection_config, make_mcp_server):
    """Health check reports connection failures instead of raising."""
    server = make_mcp_server(fail_first=100)
    registry = _registry(connection_config, server)

    status = await registry.health_check(ENDPOINT)

    assert status["connected"] is False
    assert status["toolsCount"] == 0
    assert "Failed to connect" in status["error"]
    await registry.close()
