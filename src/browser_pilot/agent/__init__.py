"""
Agent module - the orchestration loop.

Includes:
- Agent: iterative model + remote tool loop
- Compaction: token-budget history trimming and tool result compression
- Progress: typed progress events, the per-conversation emitter, cycle records
"""

from .core import Agent, dedup_key
from .compaction import compress_tool_content, estimate_tokens, trim_conversation
from .progress import (
    AIComplete,
    Connected,
    IterationStart,
    ProgressEmitter,
    ProgressEvent,
    ProgressRecord,
    ToolComplete,
    ToolErrorEvent,
    ToolInvocation,
    ToolStart,
)

__all__ = [
    "Agent",
    "dedup_key",
    "compress_tool_content",
    "estimate_tokens",
    "trim_conversation",
    "AIComplete",
    "Connected",
    "IterationStart",
    "ProgressEmitter",
    "ProgressEvent",
    "ProgressRecord",
    "ToolComplete",
    "ToolErrorEvent",
    "ToolInvocation",
    "ToolStart",
]
