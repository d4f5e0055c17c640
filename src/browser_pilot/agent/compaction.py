"""
Conversation compaction - keeps request size under a token budget.

Two mechanisms bound token growth during a cycle:
- ``trim_conversation`` drops middle history, keeping the first message
  (the original task framing) and as many recent messages as fit.
- ``compress_tool_content`` shrinks individual tool results before they
  enter the history at all.

Token counts are estimates (about four characters per token).
"""

import math
from typing import Any

import structlog

from ..llm.base import LLMMessage, TextContent, ToolResultContent, find_orphan_tool_results

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4
STRUCTURAL_PART_TOKENS = 50
UNKNOWN_CONTENT_TOKENS = 100

DEFAULT_MAX_CONTEXT_TOKENS = 150_000
DEFAULT_MAX_TOOL_RESULT_CHARS = 5000

TRUNCATION_SUFFIX = "... [truncated for brevity]"
IMAGE_PLACEHOLDER = "[Screenshot taken and analyzed]"


def _text_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _tool_result_tokens(content: Any) -> int:
    if isinstance(content, str):
        return _text_tokens(content)
    if isinstance(content, list):
        total = 0
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
                total += _text_tokens(item["text"])
            else:
                total += STRUCTURAL_PART_TOKENS
        return total
    return UNKNOWN_CONTENT_TOKENS


def estimate_message_tokens(message: LLMMessage) -> int:
    """Estimate the token cost of one message."""
    content = message.content
    if isinstance(content, str):
        return _text_tokens(content)
    if not isinstance(content, list):
        return UNKNOWN_CONTENT_TOKENS

    total = 0
    for part in content:
        if isinstance(part, TextContent) and part.text:
            total += _text_tokens(part.text)
        elif isinstance(part, ToolResultContent) and part.content:
            total += _tool_result_tokens(part.content)
        else:
            total += STRUCTURAL_PART_TOKENS
    return total


def estimate_tokens(messages: list[LLMMessage]) -> int:
    """Estimate token count for a list of messages."""
    return sum(estimate_message_tokens(m) for m in messages)


def _is_orphan_result_turn(message: LLMMessage, kept: list[LLMMessage]) -> bool:
    """A user turn of tool results whose requests are not in ``kept``."""
    if message.role != "user" or isinstance(message.content, str):
        return False
    results = message.tool_results
    if not results:
        return False
    requested = {call.id for m in kept for call in m.tool_calls}
    return any(r.tool_use_id not in requested for r in results)


def trim_conversation(
    messages: list[LLMMessage],
    max_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
) -> list[LLMMessage]:
    """Trim a conversation to fit an estimated token budget.

    The first message is always kept. Recent messages are kept working
    backward from the end until one does not fit. A conversation that
    already fits is returned as the same list object.
    """
    token_counts = [estimate_message_tokens(m) for m in messages]
    total = sum(token_counts)
    if total <= max_tokens or not messages:
        return messages

    first = messages[0]
    remaining = max_tokens - token_counts[0]
    if remaining < 0:
        logger.warning(
            "First message alone exceeds token budget",
            first_message_tokens=token_counts[0],
            max_tokens=max_tokens,
        )
        return [first]

    recent: list[LLMMessage] = []
    for i in range(len(messages) - 1, 0, -1):
        if token_counts[i] > remaining:
            break
        recent.insert(0, messages[i])
        remaining -= token_counts[i]

    # Tool results must follow the assistant turn that requested them.
    while recent and _is_orphan_result_turn(recent[0], [first]):
        dropped = recent.pop(0)
        remaining += estimate_message_tokens(dropped)

    trimmed = [first] + recent
    orphans = find_orphan_tool_results(trimmed)
    if orphans:
        logger.warning("Trimmed history still has unmatched tool results", tool_use_ids=orphans)

    logger.info(
        "Trimmed conversation",
        original_messages=len(messages),
        kept_messages=len(trimmed),
        original_tokens=total,
        kept_tokens=max_tokens - remaining,
    )
    return trimmed


def compress_tool_content(
    content: list[dict[str, Any]],
    max_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS,
) -> list[dict[str, Any]]:
    """Truncate long text and replace images with a placeholder."""
    compressed = []
    for item in content:
        mime_type = item.get("mimeType") or ""
        if item.get("type") == "image" or mime_type.startswith("image/"):
            compressed.append({"type": "text", "text": IMAGE_PLACEHOLDER})
        elif item.get("type") == "text" and len(item.get("text") or "") > max_chars:
            compressed.append({**item, "text": item["text"][:max_chars] + TRUNCATION_SUFFIX})
        else:
            compressed.append(item)
    return compressed
