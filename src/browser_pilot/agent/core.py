"""
Core agent implementation: the iterative tool-orchestration loop.

For each user turn the agent:
1. Connects to the conversation's MCP endpoint (if any) and exposes its tools
2. Calls the model, trimming history to the token budget every iteration
3. Runs requested tools concurrently, skipping exact duplicates
4. Feeds compressed results back until the model stops asking for tools
5. Emits progress events and hands a progress record to persistence
"""

import asyncio
import json
import time
from typing import Any

import structlog

from ..config import Settings, get_settings
from ..errors import ToolError
from ..llm import BaseLLM, LLMMessage, ToolCall, ToolDefinition, ToolResultContent, create_llm
from ..storage import MessageStore
from ..tools import ClientRegistry, MCPClient, ToolResult, convert_tools_to_definitions
from ..tools.client import is_timeout_error
from .compaction import compress_tool_content, trim_conversation
from .progress import (
    AIComplete,
    EmitFunction,
    IterationStart,
    ProgressEvent,
    ProgressRecord,
    ToolComplete,
    ToolErrorEvent,
    ToolInvocation,
    ToolStart,
)

logger = structlog.get_logger()

DEFAULT_TOOL_SYSTEM_PROMPT = (
    "You have access to external tools via MCP. Use the available tools to help "
    "accomplish tasks. Always wait a few seconds after actions that change page "
    "state to ensure they complete."
)

NO_TOOLS_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Answer questions and provide information, "
    "but you cannot perform actions or use external tools. Never claim to have "
    "used a tool or performed an action."
)

MAX_ITERATIONS_MESSAGE = (
    "I completed the available actions but reached the maximum number of iterations."
)
EMPTY_RESPONSE_MESSAGE = "I completed the actions but couldn't generate a response."
SKIPPED_DUPLICATE_TEXT = "Tool call skipped (duplicate)"


def dedup_key(name: str, arguments: dict[str, Any] | None) -> str:
    """Key identifying a tool call; argument order does not matter."""
    serialized = json.dumps(arguments or {}, sort_keys=True, separators=(",", ":"), default=str)
    return f"{name}-{serialized}"


class Agent:
    """Drives a model through rounds of remote tool use.

    The client registry and message store are owned by the caller and
    shared across conversations. Progress is delivered through the
    ``emit`` function passed to each call.
    """

    def __init__(
        self,
        llm: BaseLLM | None = None,
        registry: ClientRegistry | None = None,
        settings: Settings | None = None,
        store: MessageStore | None = None,
    ):
        self.settings = settings or get_settings()
        self.llm = llm or create_llm(settings=self.settings)
        if registry is None:
            registry = ClientRegistry(
                self.settings.get_connection_config(),
                idle_timeout=self.settings.mcp_client_idle_timeout,
            )
        self.registry = registry
        self.store = store
        self.max_iterations = self.settings.max_iterations

    async def _connect_tools(self, endpoint: str | None) -> tuple[MCPClient | None, list[ToolDefinition]]:
        if not endpoint:
            return None, []

        try:
            client = await self.registry.get(endpoint)
        except (ToolError, ValueError) as e:
            logger.error("Failed to connect to MCP server, continuing without tools", endpoint=endpoint, error=str(e))
            return None, []

        tools = convert_tools_to_definitions(client.tools)
        logger.info("Using MCP tools", endpoint=endpoint, tool_count=len(tools))
        return client, tools

    @staticmethod
    def _build_system_prompt(system_prompt: str | None, has_tools: bool) -> str:
        if has_tools:
            return system_prompt or DEFAULT_TOOL_SYSTEM_PROMPT
        if system_prompt:
            return f"{system_prompt}\n\n{NO_TOOLS_SYSTEM_PROMPT}"
        return NO_TOOLS_SYSTEM_PROMPT

    async def generate_response(
        self,
        messages: list[LLMMessage],
        endpoint: str | None = None,
        system_prompt: str | None = None,
        chat_id: str | None = None,
        emit: EmitFunction | None = None,
    ) -> str:
        """Run one generation cycle and return the final assistant text.

        Raises:
            ModelAPIError: if the model service fails. The cycle is aborted
                and nothing is persisted.
        """
        started = time.monotonic()
        steps: list[ToolInvocation] = []
        executed: set[str] = set()

        def send(event: ProgressEvent) -> None:
            if emit is None:
                return
            try:
                emit(event)
            except Exception as e:
                logger.warning("Progress emit failed", event_type=event.type, error=str(e))

        client, tools = await self._connect_tools(endpoint)
        system = self._build_system_prompt(system_prompt, bool(tools))

        conversation = list(messages)
        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            conversation = trim_conversation(conversation, self.settings.max_history_tokens)
            send(IterationStart(iteration=iteration))
            logger.info("AI iteration", iteration=iteration, chat_id=chat_id)

            response = await self.llm.generate(
                messages=list(conversation),
                tools=tools or None,
                system_prompt=system if iteration == 1 else None,
            )

            tool_calls = response.tool_calls
            if not tool_calls or client is None:
                if tool_calls:
                    logger.warning("Model requested tools but no MCP client is available", chat_id=chat_id)
                text = response.text or EMPTY_RESPONSE_MESSAGE
                logger.info("AI completed", iterations=iteration, chat_id=chat_id)
                return await self._finish(text, iteration, steps, started, chat_id, send)

            if not self.settings.dedupe_across_iterations:
                executed = set()

            logger.info("Executing tools", tools=[c.name for c in tool_calls])
            results = await self._execute_tool_calls(client, tool_calls, executed, steps, send)

            conversation.append(LLMMessage(role="assistant", content=list(response.content)))
            conversation.append(LLMMessage(role="user", content=list(results)))

        logger.warning("AI reached max iterations", max_iterations=self.max_iterations, chat_id=chat_id)
        return await self._finish(MAX_ITERATIONS_MESSAGE, self.max_iterations, steps, started, chat_id, send)

    async def _execute_tool_calls(
        self,
        client: MCPClient,
        tool_calls: list[ToolCall],
        executed: set[str],
        steps: list[ToolInvocation],
        send: EmitFunction,
    ) -> list[ToolResultContent]:
        """Run one turn of tool calls concurrently, preserving request order."""
        pending = []
        for call in tool_calls:
            key = dedup_key(call.name, call.arguments)
            if key in executed:
                logger.info("Skipping duplicate tool call", tool=call.name)
                invocation = ToolInvocation(
                    id=call.id,
                    name=call.name,
                    arguments=call.arguments,
                    description=f"Skipped duplicate {call.name} call",
                )
                invocation.complete()
                steps.append(invocation)
                pending.append(self._skipped(call))
                continue

            executed.add(key)
            invocation = ToolInvocation(id=call.id, name=call.name, arguments=call.arguments)
            steps.append(invocation)
            pending.append(self._run_tool(client, call, invocation, send))

        return list(await asyncio.gather(*pending))

    async def _skipped(self, call: ToolCall) -> ToolResultContent:
        return ToolResultContent(
            tool_use_id=call.id,
            content=[{"type": "text", "text": SKIPPED_DUPLICATE_TEXT}],
            is_error=False,
        )

    async def _run_tool(
        self,
        client: MCPClient,
        call: ToolCall,
        invocation: ToolInvocation,
        send: EmitFunction,
    ) -> ToolResultContent:
        send(ToolStart(tool_id=call.id, tool_name=call.name, params=call.arguments))

        try:
            result = await client.call_tool(call.name, call.arguments)
        except Exception as e:
            if not is_timeout_error(e):
                message = str(e) or type(e).__name__
                logger.error("Failed to call MCP tool", tool=call.name, error=message)
                invocation.fail(message)
                send(ToolErrorEvent(tool_id=call.id, tool_name=call.name, error=message))
                return ToolResultContent(
                    tool_use_id=call.id,
                    content=[{"type": "text", "text": f"Error: {message}"}],
                    is_error=True,
                )
            result = ToolResult.timeout(call.name)

        if result.timed_out:
            # The action may have gone through; tell the model so it does not retry blindly.
            message = f"Tool {call.name} timed out"
            invocation.fail(message)
            send(ToolErrorEvent(tool_id=call.id, tool_name=call.name, error=message))
            return ToolResultContent(tool_use_id=call.id, content=result.content, is_error=False)

        if result.is_error:
            invocation.fail(result.text or f"Tool {call.name} reported an error")
            send(ToolErrorEvent(tool_id=call.id, tool_name=call.name, error=invocation.error or ""))
        else:
            invocation.complete()
            send(ToolComplete(tool_id=call.id, tool_name=call.name))

        return ToolResultContent(
            tool_use_id=call.id,
            content=compress_tool_content(result.content, self.settings.max_tool_result_chars),
            is_error=result.is_error,
        )

    async def _finish(
        self,
        text: str,
        iterations: int,
        steps: list[ToolInvocation],
        started: float,
        chat_id: str | None,
        send: EmitFunction,
    ) -> str:
        send(AIComplete(iterations=iterations))

        record = ProgressRecord(
            steps=list(steps),
            iterations=iterations,
            total_time_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Cycle finished",
            chat_id=chat_id,
            iterations=iterations,
            completed=record.completed_count,
            total=record.total_count,
            total_time_ms=record.total_time_ms,
        )

        if self.store is not None and chat_id is not None:
            await self.store.save_assistant_message(chat_id, text, record)

        return text
