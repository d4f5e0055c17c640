"""
MCP protocol client with connection lifecycle management.

One MCPClient owns one SSE connection to one tool endpoint. It:
1. Connects with bounded retries, exponential backoff and jitter
2. Discovers and caches the tool catalog
3. Checks liveness on a keepalive interval (``tools/list``)
4. Detects connection loss and re-dials after a cooldown
5. Invokes tools with a per-call timeout and classifies failures
"""

import asyncio
import random
import time
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Callable

import httpx
import structlog
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.shared.exceptions import McpError
from mcp.types import Implementation

from ..config import ConnectionConfig
from ..errors import ToolConnectionError, ToolExecutionError, ToolTimeoutError
from .base import ToolCatalogEntry, ToolResult, sanitize_arguments

logger = structlog.get_logger()

_CLIENT_INFO = Implementation(name="browser-pilot", version="0.1.0")

# JSON-RPC codes used by MCP servers and the SDK for request timeouts
TIMEOUT_ERROR_CODES = frozenset({-32001, 408})

SessionFactory = Callable[[str, float], AbstractAsyncContextManager[Any]]


class ConnectionState(str, Enum):
    """Connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


@asynccontextmanager
async def open_sse_session(url: str, timeout: float) -> AsyncIterator[ClientSession]:
    """Open an initialized MCP session over SSE."""
    async with sse_client(url, timeout=timeout) as (read, write):
        async with ClientSession(read, write, client_info=_CLIENT_INFO) as session:
            await session.initialize()
            yield session


def normalize_endpoint(endpoint: Any) -> str:
    """Validate an endpoint and default its scheme to http://."""
    if not endpoint or not isinstance(endpoint, str) or not endpoint.strip():
        raise ValueError("Invalid MCP URL provided")

    normalized = endpoint.strip()
    if not normalized.startswith(("http://", "https://")):
        normalized = f"http://{normalized}"

    try:
        url = httpx.URL(normalized)
    except httpx.InvalidURL as e:
        raise ValueError(f"Invalid MCP URL format: {normalized}") from e
    if not url.host:
        raise ValueError(f"Invalid MCP URL format: {normalized}")

    return normalized


def is_timeout_error(error: BaseException) -> bool:
    """Whether a failure should be treated as a (possibly successful) timeout."""
    if isinstance(error, (asyncio.TimeoutError, ToolTimeoutError)):
        return True
    if isinstance(error, McpError) and error.error.code in TIMEOUT_ERROR_CODES:
        return True
    message = str(error).lower()
    return "timed out" in message or "timeout" in message


class MCPClient:
    """Persistent client for one MCP tool endpoint."""

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        session_factory: SessionFactory | None = None,
    ):
        self.config = config or ConnectionConfig()
        self._session_factory = session_factory or open_sse_session

        self.endpoint: str | None = None
        self.state = ConnectionState.DISCONNECTED
        self.connection_attempts = 0
        self.last_successful_connection = 0.0
        self.last_activity = time.monotonic()

        self._tools: list[ToolCatalogEntry] = []
        self._tool_index: dict[str, ToolCatalogEntry] = {}
        self._session: Any = None
        self._runner: asyncio.Task | None = None
        self._closing: asyncio.Event | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def tools(self) -> list[ToolCatalogEntry]:
        """The cached tool catalog."""
        return list(self._tools)

    def has_tool(self, name: str) -> bool:
        return name in self._tool_index

    def get_tool_schema(self, name: str) -> dict[str, Any] | None:
        entry = self._tool_index.get(name)
        return entry.input_schema if entry else None

    def touch(self) -> None:
        """Record activity for idle tracking."""
        self.last_activity = time.monotonic()

    # ------------------------------------------------------------------ #
    # Connection lifecycle
    # ------------------------------------------------------------------ #
    async def connect(self, endpoint: str) -> None:
        """Connect to an MCP endpoint, retrying with backoff.

        Raises:
            ValueError: if the endpoint is malformed.
            ToolConnectionError: once every attempt has failed.
        """
        normalized = normalize_endpoint(endpoint)

        if self.is_connected and normalized == self.endpoint:
            return
        if self.state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED, ConnectionState.RECONNECTING):
            await self.disconnect()

        self.endpoint = normalized
        self.state = ConnectionState.CONNECTING
        logger.info("Connecting to MCP server", endpoint=normalized)
        await self._establish(normalized)

    async def _establish(self, url: str) -> None:
        last_error: BaseException | None = None

        for attempt in range(self.config.max_retries):
            self.connection_attempts += 1
            try:
                await self._open_transport(url)
                await self._load_tools()
            except Exception as e:
                last_error = e
                logger.warning(
                    "MCP connection attempt failed",
                    endpoint=url,
                    attempt=attempt + 1,
                    error=str(e) or type(e).__name__,
                )
                await self._stop_runner()
                if attempt < self.config.max_retries - 1:
                    delay = (
                        self.config.retry_delay * (1.5 ** attempt)
                        + random.uniform(0, self.config.retry_jitter)
                    )
                    await asyncio.sleep(delay)
                continue

            self.state = ConnectionState.CONNECTED
            self.last_successful_connection = time.monotonic()
            self.touch()
            self._start_keepalive()
            logger.info(
                "Connected to MCP server",
                endpoint=url,
                tool_count=len(self._tools),
                tools=[t.name for t in self._tools],
            )
            return

        self.state = ConnectionState.DISCONNECTED
        raise ToolConnectionError(
            f"Failed to connect to MCP server after {self.config.max_retries} attempts. "
            f"Last error: {last_error or 'Unknown error'}",
            endpoint=url,
            attempts=self.config.max_retries,
        ) from last_error

    async def _open_transport(self, url: str) -> None:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        closing = asyncio.Event()
        self._closing = closing
        self._runner = asyncio.create_task(self._run_session(url, ready, closing))

        try:
            self._session = await asyncio.wait_for(ready, timeout=self.config.connection_timeout)
        except asyncio.TimeoutError:
            raise ToolConnectionError("Connection timeout", endpoint=url) from None

    async def _run_session(self, url: str, ready: asyncio.Future, closing: asyncio.Event) -> None:
        """Hold the transport open until asked to close.

        Entering and exiting the SDK contexts in one task keeps their
        cancel scopes valid.
        """
        try:
            async with self._session_factory(url, self.config.connection_timeout) as session:
                if not ready.done():
                    ready.set_result(session)
                await closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            if not closing.is_set():
                logger.warning("MCP transport error", endpoint=url, error=str(e))
                self._handle_connection_loss()
            return

        if not closing.is_set():
            logger.warning("MCP transport closed", endpoint=url)
            self._handle_connection_loss()

    async def _stop_runner(self) -> None:
        runner, self._runner = self._runner, None
        closing, self._closing = self._closing, None
        self._session = None
        if runner is None:
            return
        if closing is not None:
            closing.set()
        if runner is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(runner, timeout=self.config.close_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing MCP transport", endpoint=self.endpoint)
        except Exception as e:
            logger.warning("Error closing MCP transport", endpoint=self.endpoint, error=str(e))

    async def disconnect(self) -> None:
        """Stop keepalive, close the transport and clear cached state."""
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()
            await asyncio.gather(reconnect, return_exceptions=True)
        self._stop_keepalive()
        await self._stop_runner()
        self._tools = []
        self._tool_index = {}
        if self.state is not ConnectionState.DISCONNECTED:
            logger.info("Disconnected from MCP server", endpoint=self.endpoint)
        self.state = ConnectionState.DISCONNECTED

    # ------------------------------------------------------------------ #
    # Keepalive and reconnection
    # ------------------------------------------------------------------ #
    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            if not self.is_connected or self._session is None:
                return
            try:
                await asyncio.wait_for(
                    self._session.list_tools(),
                    timeout=self.config.call_timeout,
                )
            except Exception as e:
                logger.warning(
                    "Keepalive failed, attempting reconnection",
                    endpoint=self.endpoint,
                    error=str(e) or type(e).__name__,
                )
                self._handle_connection_loss()
                return

    def _handle_connection_loss(self) -> None:
        if self.state is not ConnectionState.CONNECTED:
            return

        self.state = ConnectionState.DEGRADED
        self._stop_keepalive()
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await asyncio.sleep(self.config.reconnect_cooldown)
        if self.state is not ConnectionState.DEGRADED or self.endpoint is None:
            return

        elapsed = time.monotonic() - self.last_successful_connection
        if elapsed < self.config.min_reconnect_interval:
            wait = self.config.min_reconnect_interval - elapsed
            logger.info("Delaying reconnection, last connection too recent", wait_seconds=round(wait, 2))
            await asyncio.sleep(wait)
            if self.state is not ConnectionState.DEGRADED:
                return

        logger.info("Attempting MCP reconnection", endpoint=self.endpoint)
        self.state = ConnectionState.RECONNECTING
        await self._stop_runner()
        try:
            await self._establish(self.endpoint)
        except ToolConnectionError as e:
            logger.error("Reconnection failed", endpoint=self.endpoint, error=str(e))
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # ------------------------------------------------------------------ #
    # Tool catalog
    # ------------------------------------------------------------------ #
    async def _load_tools(self) -> None:
        if self._session is None:
            raise ToolConnectionError("MCP client not connected", endpoint=self.endpoint)

        try:
            response = await asyncio.wait_for(
                self._session.list_tools(),
                timeout=self.config.call_timeout,
            )
        except Exception as e:
            raise ToolConnectionError(
                f"Failed to load MCP tools: {e or type(e).__name__}",
                endpoint=self.endpoint,
            ) from e

        self._tools = [ToolCatalogEntry.from_mcp(tool) for tool in response.tools]
        self._tool_index = {tool.name: tool for tool in self._tools}
        logger.debug("Loaded MCP tools", tools=[t.name for t in self._tools])

    async def refresh_tools(self) -> list[ToolCatalogEntry]:
        """Refetch the catalog from the server, replacing the cache."""
        if self.is_connected:
            await self._load_tools()
        return self.tools

    # ------------------------------------------------------------------ #
    # Tool invocation
    # ------------------------------------------------------------------ #
    async def _call(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Issue one tools/call request.

        Raises:
            ToolTimeoutError: on a timeout-classified failure.
            ToolExecutionError: on any other failure.
        """
        try:
            response = await asyncio.wait_for(
                self._session.call_tool(name, arguments),
                timeout=self.config.call_timeout,
            )
        except Exception as e:
            if is_timeout_error(e):
                raise ToolTimeoutError(name, self.config.call_timeout) from e
            raise ToolExecutionError(name, str(e) or type(e).__name__) from e

        return ToolResult(
            content=[_content_to_dict(item) for item in (response.content or [])],
            is_error=bool(response.isError),
        )

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Call a tool by name.

        Timeouts come back as a non-error "may have completed" result and
        other failures as an error-flagged result, so the caller can feed
        either straight back to the model.

        Raises:
            ToolConnectionError: if the client is not connected.
            ValueError: if the tool name is blank.
        """
        if not self.is_connected or self._session is None:
            raise ToolConnectionError("MCP client not connected", endpoint=self.endpoint)

        if not name or not isinstance(name, str):
            raise ValueError("Invalid tool name")

        if not self.has_tool(name):
            logger.warning("Tool not found in cached catalog, attempting anyway", tool=name, verified=False)

        sanitized = sanitize_arguments(arguments)
        self.touch()
        logger.info("Calling MCP tool", tool=name, arguments=sanitized)

        try:
            result = await self._call(name, sanitized)
        except ToolTimeoutError:
            logger.warning("MCP tool timed out", tool=name, timeout=self.config.call_timeout)
            return ToolResult.timeout(name)
        except ToolExecutionError as e:
            logger.error("Failed to call MCP tool", tool=name, error=str(e))
            return ToolResult.from_text(f"Error calling tool {name}: {e}", is_error=True)
        finally:
            self.touch()

        logger.info("MCP tool completed", tool=name, is_error=result.is_error)
        return result


def _content_to_dict(item: Any) -> dict[str, Any]:
    if isinstance(item, dict):
        return item
    if hasattr(item, "model_dump"):
        return item.model_dump(exclude_none=True)
    return {"type": getattr(item, "type", "unknown")}
