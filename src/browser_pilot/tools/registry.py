"""
Client registry: one cached MCP connection per endpoint.
"""

import asyncio
import time
from typing import Any, Callable

import structlog

from ..config import ConnectionConfig
from ..errors import ToolError
from .client import MCPClient, normalize_endpoint

logger = structlog.get_logger()

DEFAULT_IDLE_TIMEOUT = 30 * 60
DEFAULT_SWEEP_INTERVAL = 60.0


class ClientRegistry:
    """Cache of connected MCP clients keyed by endpoint.

    Concurrent conversations against the same endpoint share one
    connection. Connection establishment is single-flight: concurrent
    ``get`` calls for an unconnected endpoint await the same connect task.
    """

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        client_factory: Callable[[], MCPClient] | None = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self.config = config or ConnectionConfig()
        self._client_factory = client_factory or (lambda: MCPClient(self.config))
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clients: dict[str, MCPClient] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None

    @staticmethod
    def _key(endpoint: str) -> str:
        return normalize_endpoint(endpoint)

    async def get(self, endpoint: str) -> MCPClient:
        """Return a connected client for the endpoint, connecting if needed.

        Raises:
            ValueError: if the endpoint is empty or malformed.
            ToolConnectionError: if the connection cannot be established.
        """
        key = self._key(endpoint)
        self._ensure_sweeper()

        # No await between the lookup and registering the pending task.
        client = self._clients.get(key)
        if client is not None and client.is_connected:
            client.touch()
            return client

        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.create_task(self._create(key))
            self._pending[key] = pending

        return await asyncio.shield(pending)

    async def _create(self, key: str) -> MCPClient:
        try:
            stale = self._clients.pop(key, None)
            if stale is not None:
                logger.info("Replacing disconnected MCP client", endpoint=key, state=stale.state.value)
                await stale.disconnect()

            client = self._client_factory()
            try:
                await client.connect(key)
            except asyncio.CancelledError:
                await client.disconnect()
                raise
            self._clients[key] = client
            return client
        finally:
            self._pending.pop(key, None)

    def get_cached(self, endpoint: str) -> MCPClient | None:
        return self._clients.get(self._key(endpoint))

    async def disconnect(self, endpoint: str) -> None:
        """Disconnect and forget the client for an endpoint."""
        client = self._clients.pop(self._key(endpoint), None)
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as e:
            logger.warning("Error disconnecting MCP client", endpoint=endpoint, error=str(e))

    async def evict_idle(self) -> list[str]:
        """Disconnect clients with no activity within the idle timeout."""
        now = time.monotonic()
        idle = [
            key for key, client in self._clients.items()
            if now - client.last_activity >= self.idle_timeout
        ]
        for key in idle:
            logger.info("Evicting idle MCP client", endpoint=key)
            await self.disconnect(key)
        return idle

    def _ensure_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.evict_idle()
            except Exception as e:
                logger.error("Idle client sweep failed", error=str(e))

    async def close(self) -> None:
        """Stop the sweeper, abandon in-flight connects and disconnect every client."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for key in list(self._clients):
            await self.disconnect(key)

    @property
    def connected_count(self) -> int:
        return sum(1 for client in self._clients.values() if client.is_connected)

    def __len__(self) -> int:
        return len(self._clients)

    async def health_check(self, endpoint: str) -> dict[str, Any]:
        """Connection status for monitoring."""
        try:
            client = await self.get(endpoint)
            return {
                "connected": client.is_connected,
                "toolsCount": len(client.tools),
            }
        except (ToolError, ValueError) as e:
            return {
                "connected": False,
                "toolsCount": 0,
                "error": str(e),
            }
