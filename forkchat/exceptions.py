"""Custom exceptions for forkchat."""

from typing import Any


class ForkchatError(Exception):
    """Base exception for forkchat."""

    pass


class ConfigurationError(ForkchatError):
    """Configuration-related errors."""

    pass


class SessionError(ForkchatError):
    """Thread/message storage errors."""

    pass


class ThreadNotFoundError(SessionError):
    """Thread not found."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread not found: {thread_id}")
        self.thread_id = thread_id


class MessageNotFoundError(SessionError):
    """Message not found."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class AmbiguousPrefixError(SessionError):
    """An ID prefix matched more than one record."""

    def __init__(self, prefix: str, matches: int):
        super().__init__(f"Prefix '{prefix}' is ambiguous ({matches} matches)")
        self.prefix = prefix
        self.matches = matches


class InvalidParentError(SessionError):
    """Parent reference points outside the message's thread."""

    pass


class LLMError(ForkchatError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(ForkchatError):
    """Tool errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolArgumentError(ToolError):
    """Tool arguments failed schema validation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"argument validation failed: {message}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class JsonParseError(ForkchatError):
    """Malformed input in the incremental JSON parser.

    ``updates`` holds the value updates flushed before the failure so a
    caller can still surface what was parsed.
    """

    def __init__(self, message: str, updates: list[Any] | None = None):
        super().__init__(f"invalid JSON: {message}")
        self.updates = list(updates or [])


class AgentError(ForkchatError):
    """Orchestration errors."""

    pass


class TurnCancelledError(AgentError):
    """The turn was aborted by its caller."""

    def __init__(self, message: str = "Turn cancelled"):
        super().__init__(message)
