"""Thread and message records."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from forkchat.llm.types import ToolCall


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)


class Role(str, Enum):
    HUMAN = "human"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


@dataclass
class Thread:
    """A conversation: an independent tree of messages."""

    id: str
    summary: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    """A node in a thread's message tree.

    ``id`` is ``None`` until the message has been persisted; the repository
    assigns it on append.
    """

    thread_id: str
    role: Role
    content: str = ""
    parent_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    model_name: str = ""
    provider: str = ""
    id: str | None = None
    created_at: datetime | None = None

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    @property
    def has_tool_calls(self) -> bool:
        return self.role == Role.ASSISTANT and bool(self.tool_calls)

    def serialized_tool_calls(self) -> str:
        """Serialize tool calls for storage (empty string when there are none)."""
        if not self.tool_calls:
            return ""
        return json.dumps([call.to_dict() for call in self.tool_calls])

    @staticmethod
    def parse_tool_calls(raw: str | None) -> list[ToolCall]:
        """Inverse of :meth:`serialized_tool_calls`."""
        if not raw:
            return []
        payload: list[dict[str, Any]] = json.loads(raw)
        return [ToolCall.from_dict(item) for item in payload]
