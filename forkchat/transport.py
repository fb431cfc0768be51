"""Tool transport: MCP servers reached over stdio."""

import os
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from forkchat.config import MCPServerConfig
from forkchat.exceptions import ConfigurationError, ToolError, ToolExecutionError
from forkchat.logging import get_logger
from forkchat.tools.registry import NAME_SEPARATOR, qualify
from forkchat.tools.schema import Tool

log = get_logger(__name__)


class ToolTransport(ABC):
    """Lists and invokes tools hosted by external servers."""

    @abstractmethod
    async def list_tools(self) -> dict[str, dict[str, Tool]]:
        """Return ``server -> tool name -> Tool``."""

    @abstractmethod
    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool and return its text result.

        Raises:
            ToolError if the call fails
        """

    async def close(self) -> None:
        return None


def _content_text(content: Any) -> str:
    if getattr(content, "text", None) is not None:
        return content.text
    if getattr(content, "data", None) is not None:
        return f"[Binary data: {len(content.data)} bytes]"
    return str(content)


class MCPClient(ToolTransport):
    """Tool transport backed by MCP stdio sessions, one per configured server."""

    def __init__(self, servers: dict[str, MCPServerConfig]):
        for name in servers:
            if NAME_SEPARATOR in name:
                raise ConfigurationError(
                    f"MCP server name {name!r} must not contain '{NAME_SEPARATOR}'"
                )
        self.servers = servers
        self._sessions: dict[str, ClientSession] = {}
        self._stack: AsyncExitStack | None = None

    async def start(self) -> None:
        """Spawn every configured server and initialize its session.

        Raises:
            ToolError if a server fails to start
        """
        if self._stack is not None:
            return
        self._stack = AsyncExitStack()

        for name, server in self.servers.items():
            params = StdioServerParameters(
                command=server.command,
                args=list(server.args),
                env={**os.environ, **server.env},
            )
            try:
                read, write = await self._stack.enter_async_context(stdio_client(params))
                session = await self._stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
            except Exception as e:
                await self.close()
                raise ToolError(f"Failed to start MCP server '{name}': {e}") from e

            self._sessions[name] = session
            log.info("MCP server started", server=name, command=server.command)

    async def list_tools(self) -> dict[str, dict[str, Tool]]:
        catalog: dict[str, dict[str, Tool]] = {}
        for name, session in self._sessions.items():
            try:
                response = await session.list_tools()
            except Exception as e:
                raise ToolError(f"Failed to list tools on '{name}': {e}") from e

            tools: dict[str, Tool] = {}
            for item in response.tools:
                tools[item.name] = Tool.from_input_schema(item.name, item.description, item.inputSchema)
            catalog[name] = tools
            log.debug("Listed MCP tools", server=name, count=len(tools))
        return catalog

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> str:
        qualified = qualify(server, tool)
        session = self._sessions.get(server)
        if session is None:
            raise ToolExecutionError(qualified, f"server '{server}' is not running")

        try:
            result = await session.call_tool(tool, arguments)
        except Exception as e:
            raise ToolExecutionError(qualified, str(e)) from e

        text = "\n".join(_content_text(content) for content in result.content)
        if result.isError:
            raise ToolExecutionError(qualified, text or "tool reported an error")
        return text

    async def close(self) -> None:
        """Shut down all server sessions."""
        stack, self._stack = self._stack, None
        self._sessions = {}
        if stack is not None:
            await stack.aclose()
