"""Data types shared by model providers and the orchestration loop."""

import json
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``name`` is fully qualified as ``server__tool``. ``arguments`` is the raw
    JSON object text exactly as the model produced it.
    """

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; an empty payload is an empty object.

        Raises:
            ValueError if the payload is not a JSON object
        """
        if not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError("tool arguments must be a JSON object")
        return value

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        arguments = data.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(id=str(data.get("id", "")), name=str(data.get("name", "")), arguments=arguments)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


# Stream events produced by LLMProvider.generate


@dataclass
class StreamText:
    """A fragment of assistant text."""

    content: str


@dataclass
class StreamToolCall:
    """A fragment of one tool call's argument JSON.

    The first fragment of a call carries its name; later fragments for the
    same ``call_id`` may leave ``name`` empty.
    """

    call_id: str
    name: str = ""
    arguments: str = ""


@dataclass
class StreamComplete:
    """Terminal event: the full assistant message."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class StreamError:
    """Terminal event: generation failed."""

    error: Exception


StreamEvent = Union[StreamText, StreamToolCall, StreamComplete, StreamError]
