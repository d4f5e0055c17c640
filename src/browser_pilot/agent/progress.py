"""
Progress events and the per-conversation emitter.

The orchestrator emits typed events through an ``emit(event)`` function it
is handed at call time. ``ProgressEmitter`` maps a conversation id to at most
one listener, so the most recent listener wins.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, ClassVar

import structlog

logger = structlog.get_logger()


@dataclass
class ProgressEvent:
    """Base class for progress events."""

    type: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass
class Connected(ProgressEvent):
    type: ClassVar[str] = "connected"
    chat_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "chatId": self.chat_id}


@dataclass
class IterationStart(ProgressEvent):
    type: ClassVar[str] = "iteration_start"
    iteration: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "iteration": self.iteration}


@dataclass
class ToolStart(ProgressEvent):
    type: ClassVar[str] = "tool_start"
    tool_id: str
    tool_name: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "toolId": self.tool_id,
            "toolName": self.tool_name,
            "params": self.params,
        }


@dataclass
class ToolComplete(ProgressEvent):
    type: ClassVar[str] = "tool_complete"
    tool_id: str
    tool_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "toolId": self.tool_id, "toolName": self.tool_name}


@dataclass
class ToolErrorEvent(ProgressEvent):
    type: ClassVar[str] = "tool_error"
    tool_id: str
    tool_name: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "toolId": self.tool_id,
            "toolName": self.tool_name,
            "error": self.error,
        }


@dataclass
class AIComplete(ProgressEvent):
    type: ClassVar[str] = "ai_complete"
    iterations: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "iterations": self.iterations}


EmitFunction = Callable[[ProgressEvent], None]
Listener = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Routes progress events to the active listener of each conversation."""

    def __init__(self):
        self._listeners: dict[str, Listener] = {}

    def subscribe(self, chat_id: str, listener: Listener) -> Callable[[], None]:
        """Register a listener, replacing any existing one.

        Returns a function that removes this listener.
        """
        if chat_id in self._listeners:
            logger.debug("Replacing progress listener", chat_id=chat_id)
        self._listeners[chat_id] = listener
        return partial(self.unsubscribe, chat_id, listener)

    def unsubscribe(self, chat_id: str, listener: Listener | None = None) -> None:
        """Remove the listener for a conversation.

        With ``listener`` given, only removes it if it is still the active one.
        """
        current = self._listeners.get(chat_id)
        if current is None:
            return
        if listener is not None and current is not listener:
            return
        del self._listeners[chat_id]

    def has_listener(self, chat_id: str) -> bool:
        return chat_id in self._listeners

    def emit(self, chat_id: str, event: ProgressEvent) -> None:
        """Deliver an event. No-op when nobody is listening."""
        listener = self._listeners.get(chat_id)
        if listener is None:
            return
        try:
            listener(event)
        except Exception as e:
            logger.warning("Progress listener failed", chat_id=chat_id, event_type=event.type, error=str(e))

    def channel(self, chat_id: str) -> EmitFunction:
        """An ``emit(event)`` function bound to one conversation."""
        return partial(self.emit, chat_id)


class InvocationStatus(str, Enum):
    """Status of a tool invocation in the progress trace."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


def describe_tool_call(name: str, params: dict[str, Any] | None = None) -> str:
    """Human-readable label for a tool call."""
    params = params or {}
    if name == "browser_navigate":
        return f"Navigating to {params.get('url') or 'webpage'}"
    if name == "browser_take_screenshot":
        return "Capturing page screenshot"
    if name == "browser_click":
        return f"Clicking {params.get('element') or 'element'}"
    if name == "browser_type":
        return f'Typing "{params.get("text") or "text"}"'
    if name == "browser_snapshot":
        return "Analyzing page structure"
    if name == "browser_wait_for":
        return f"Waiting {params.get('time') or 3} seconds"
    return f"Executing {name}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ToolInvocation:
    """One tool call as shown in the progress trace."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: InvocationStatus = InvocationStatus.RUNNING
    description: str = ""
    started_at: int = field(default_factory=_now_ms)
    ended_at: int | None = None
    error: str | None = None

    def __post_init__(self):
        if not self.description:
            self.description = describe_tool_call(self.name, self.arguments)

    def complete(self) -> None:
        self.status = InvocationStatus.COMPLETED
        self.ended_at = _now_ms()

    def fail(self, error: str) -> None:
        self.status = InvocationStatus.ERROR
        self.ended_at = _now_ms()
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "startTime": self.started_at,
        }
        if self.ended_at is not None:
            data["endTime"] = self.ended_at
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ProgressRecord:
    """Summary of one generation cycle, handed to persistence."""

    steps: list[ToolInvocation]
    iterations: int
    total_time_ms: int

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.status is InvocationStatus.COMPLETED)

    @property
    def total_count(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "iterations": self.iterations,
            "totalTimeMs": self.total_time_ms,
            "completedCount": self.completed_count,
            "totalCount": self.total_count,
        }
