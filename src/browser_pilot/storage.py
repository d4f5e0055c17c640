"""
Persistence handoff for finished generation cycles.

Storage itself belongs to the host application. The orchestrator only
needs something it can hand the final text and progress record to.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

import structlog

if TYPE_CHECKING:
    from .agent.progress import ProgressRecord

logger = structlog.get_logger()


class MessageStore(Protocol):
    """Receives one assistant message per completed cycle."""

    async def save_assistant_message(
        self,
        chat_id: str,
        content: str,
        progress: "ProgressRecord | None" = None,
    ) -> None:
        ...


@dataclass
class StoredMessage:
    """An assistant message with its optional progress data."""

    chat_id: str
    content: str
    role: str = "assistant"
    progress_data: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryMessageStore:
    """Message store kept in process memory."""

    def __init__(self):
        self._messages: dict[str, list[StoredMessage]] = {}

    async def save_assistant_message(
        self,
        chat_id: str,
        content: str,
        progress: "ProgressRecord | None" = None,
    ) -> None:
        message = StoredMessage(
            chat_id=chat_id,
            content=content,
            progress_data=progress.to_dict() if progress is not None else None,
        )
        self._messages.setdefault(chat_id, []).append(message)
        logger.debug(
            "Stored assistant message",
            chat_id=chat_id,
            steps=progress.total_count if progress is not None else 0,
        )

    def get_messages(self, chat_id: str) -> list[StoredMessage]:
        return list(self._messages.get(chat_id, []))
