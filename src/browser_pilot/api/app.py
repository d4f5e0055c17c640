"""
FastAPI application factory.

Thin HTTP surface over the agent:
- Live progress over Server-Sent Events, one listener per chat
- A generate endpoint that runs one cycle for a chat
- MCP connection status for an endpoint
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Literal

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .. import __version__
from ..agent import Agent, Connected, ProgressEmitter, ProgressEvent
from ..config import Settings, get_settings
from ..errors import ModelAPIError
from ..llm import LLMMessage
from ..storage import InMemoryMessageStore, MessageStore
from ..tools import ClientRegistry

logger = structlog.get_logger()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_sse(event: ProgressEvent) -> str:
    """Encode one event as an SSE data frame."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


async def progress_stream(
    emitter: ProgressEmitter,
    chat_id: str,
    request: Request | None = None,
    heartbeat_interval: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for a chat until the client goes away.

    The listener is removed as soon as the stream ends; in-flight model
    and tool calls keep running.
    """
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    unsubscribe = emitter.subscribe(chat_id, queue.put_nowait)
    try:
        yield format_sse(Connected(chat_id=chat_id))
        while True:
            if request is not None and await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
    finally:
        unsubscribe()
        logger.debug("Progress stream closed", chat_id=chat_id)


class ChatMessageIn(BaseModel):
    """A stored chat message."""
    role: Literal["user", "assistant"]
    content: str


class GenerateRequest(BaseModel):
    """Generation request for one chat."""
    messages: list[ChatMessageIn]
    mode: Literal["agent", "ask"] = "ask"
    endpoint: str | None = None
    system: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    if app.state.agent is None:
        try:
            app.state.agent = Agent(
                registry=app.state.registry,
                settings=app.state.settings,
                store=app.state.store,
            )
        except ValueError as e:
            logger.warning("Agent not initialized, generation disabled", error=str(e))
        else:
            logger.info("Agent initialized", model=app.state.agent.llm.model)

    yield

    await app.state.registry.close()
    logger.info("Application shutdown complete")


def create_app(
    settings: Settings | None = None,
    agent: Agent | None = None,
    registry: ClientRegistry | None = None,
    emitter: ProgressEmitter | None = None,
    store: MessageStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Browser-Pilot",
        description="Model-driven browser automation over MCP with live progress",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if registry is None:
        if agent is not None:
            registry = agent.registry
        else:
            registry = ClientRegistry(
                settings.get_connection_config(),
                idle_timeout=settings.mcp_client_idle_timeout,
            )

    app.state.settings = settings
    app.state.registry = registry
    app.state.emitter = emitter if emitter is not None else ProgressEmitter()
    app.state.store = store if store is not None else InMemoryMessageStore()
    app.state.agent = agent

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #
    @app.get("/api/health")
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "llm_configured": bool(request.app.state.settings.anthropic_api_key),
            "agent_ready": request.app.state.agent is not None,
            "mcp_clients": request.app.state.registry.connected_count,
        }

    # ------------------------------------------------------------------ #
    # Progress stream
    # ------------------------------------------------------------------ #
    @app.get("/api/ai-progress/{chat_id}")
    async def ai_progress(chat_id: str, request: Request) -> StreamingResponse:
        """Stream progress events for a chat."""
        return StreamingResponse(
            progress_stream(request.app.state.emitter, chat_id, request),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # ------------------------------------------------------------------ #
    # Generation
    # ------------------------------------------------------------------ #
    @app.post("/api/chat/{chat_id}/generate")
    async def generate(chat_id: str, body: GenerateRequest, request: Request) -> dict[str, str]:
        """Run one generation cycle for a chat."""
        if not body.messages:
            raise HTTPException(status_code=400, detail="No messages to respond to")

        agent: Agent | None = request.app.state.agent
        if agent is None:
            raise HTTPException(status_code=503, detail="Agent not initialized")

        endpoint = body.endpoint if body.mode == "agent" else None
        logger.info("Generating response", chat_id=chat_id, mode=body.mode, endpoint=endpoint or "disabled")

        messages = [LLMMessage(role=m.role, content=m.content) for m in body.messages]
        emitter: ProgressEmitter = request.app.state.emitter

        try:
            response = await agent.generate_response(
                messages,
                endpoint=endpoint,
                system_prompt=body.system,
                chat_id=chat_id,
                emit=emitter.channel(chat_id),
            )
        except ModelAPIError as e:
            logger.error("Failed to generate AI response", chat_id=chat_id, error=str(e))
            raise HTTPException(status_code=502, detail="Failed to generate response")

        return {"response": response}

    # ------------------------------------------------------------------ #
    # MCP status
    # ------------------------------------------------------------------ #
    @app.get("/api/mcp-status")
    async def mcp_status(request: Request, endpoint: str | None = None) -> dict[str, Any]:
        """Connection status for an MCP endpoint."""
        if not endpoint:
            return {"connected": False, "toolsCount": 0, "error": "No MCP URL available"}
        return await request.app.state.registry.health_check(endpoint)

    return app
