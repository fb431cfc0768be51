"""Events emitted by the orchestration loop."""

from dataclasses import dataclass, field
from typing import Union

from forkchat.llm.types import ToolCall
from forkchat.session.models import Message


@dataclass
class NewMessage:
    """A message was persisted."""

    message: Message


@dataclass
class TextChunk:
    """Assistant text as it streams."""

    content: str


@dataclass
class ToolCallStart:
    """The model started streaming a new tool call."""

    call_id: str
    name: str


@dataclass
class ToolArgumentChunk:
    """New content for one argument of a streaming tool call."""

    call_id: str
    name: str
    path: str
    chunk: str


@dataclass
class ToolArgumentError:
    """A tool call's argument stream could not be parsed.

    Only that call's argument updates stop; the turn continues.
    """

    call_id: str
    name: str
    error: Exception


@dataclass
class ToolApprovalRequested:
    """The turn is suspended until the tool calls are approved or rejected."""

    message: Message
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolResult:
    """Outcome of one executed tool call."""

    call_id: str
    name: str
    result: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ErrorEvent:
    """The turn ended with an error."""

    error: Exception


AgentEvent = Union[
    NewMessage,
    TextChunk,
    ToolCallStart,
    ToolArgumentChunk,
    ToolArgumentError,
    ToolApprovalRequested,
    ToolResult,
    ErrorEvent,
]
