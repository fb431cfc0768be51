"""Model providers - streaming generation over HTTP."""

import json
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx

from forkchat.config import PresetConfig
from forkchat.exceptions import ConfigurationError, LLMAPIError, LLMError
from forkchat.llm.json_parser import IncrementalJsonParser, JsonUpdate
from forkchat.llm.types import (
    StreamComplete,
    StreamError,
    StreamEvent,
    StreamText,
    StreamToolCall,
    ToolCall,
    ToolDefinition,
)
from forkchat.logging import get_logger

if TYPE_CHECKING:
    from forkchat.session.models import Message

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

_ROLE_MAP = {
    "human": "user",
    "assistant": "assistant",
    "tool": "tool",
    "system": "system",
}


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    name: str = ""
    model: str = ""

    @abstractmethod
    def generate(
        self,
        history: list["Message"],
        tools: list[ToolDefinition] | None = None,
        system_message: str = "",
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response to ``history``.

        Yields text and tool-call fragments, then exactly one terminal
        ``StreamComplete`` or ``StreamError``. Cancelling the consumer
        cancels the underlying request.
        """

    async def close(self) -> None:
        return None


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    name = "ollama"

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(
        self, history: list["Message"], system_message: str
    ) -> list[dict[str, Any]]:
        """Convert stored messages to Ollama chat format."""
        result: list[dict[str, Any]] = []
        if system_message:
            result.append({"role": "system", "content": system_message})

        for msg in history:
            role = _ROLE_MAP.get(msg.role.value, "user")
            entry: dict[str, Any] = {"role": role, "content": msg.content or ""}
            if role == "assistant" and msg.tool_calls:
                calls = []
                for call in msg.tool_calls:
                    try:
                        arguments = call.parsed_arguments()
                    except ValueError:
                        arguments = {}
                    calls.append({"function": {"name": call.name, "arguments": arguments}})
                entry["tool_calls"] = calls
            result.append(entry)

        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
        ]

    async def generate(
        self,
        history: list["Message"],
        tools: list[ToolDefinition] | None = None,
        system_message: str = "",
    ) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion from ``/api/chat``."""
        url = f"{self.base_url}/api/chat"

        ollama_messages = self._convert_messages(history, system_message)

        options: dict[str, Any] = {
            "temperature": self.temperature,
        }
        if self.max_tokens:
            options["num_predict"] = self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": ollama_messages,
            "stream": True,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(ollama_messages))

        content_parts: list[str] = []
        tool_calls: list[ToolCall] = []

        try:
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    chunk = json.loads(line)
                    if chunk.get("error"):
                        raise LLMAPIError(f"Ollama error: {chunk['error']}")

                    message = chunk.get("message") or {}
                    if message.get("content"):
                        content_parts.append(message["content"])
                        yield StreamText(content=message["content"])

                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function") or {}
                        arguments = function.get("arguments") or {}
                        if not isinstance(arguments, str):
                            arguments = json.dumps(arguments)
                        call = ToolCall(
                            id=tc.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                            name=function.get("name", ""),
                            arguments=arguments,
                        )
                        tool_calls.append(call)
                        yield StreamToolCall(call_id=call.id, name=call.name, arguments=call.arguments)

                    if chunk.get("done"):
                        yield StreamComplete(content="".join(content_parts), tool_calls=tool_calls)
                        return

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(preset: PresetConfig) -> LLMProvider:
    """Create an LLM provider for a preset.

    Raises:
        ConfigurationError if the provider is not supported
    """
    if preset.provider == "ollama":
        return OllamaProvider(
            model=preset.model,
            base_url=preset.base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=preset.temperature,
            max_tokens=preset.max_tokens,
            api_key=preset.api_key or None,
        )
    raise ConfigurationError(f"Provider '{preset.provider}' not supported. Use 'ollama'.")


__all__ = [
    "IncrementalJsonParser",
    "JsonUpdate",
    "LLMProvider",
    "OllamaProvider",
    "StreamComplete",
    "StreamError",
    "StreamEvent",
    "StreamText",
    "StreamToolCall",
    "ToolCall",
    "ToolDefinition",
    "create_provider",
]
