"""Application context shared by the CLI, the agent and the summarizer."""

from dataclasses import dataclass, field
from typing import Callable

from forkchat.config import Config, PresetConfig
from forkchat.llm import LLMProvider, create_provider
from forkchat.logging import configure_logging, get_logger
from forkchat.session import MessageRepository, SQLiteMessageRepository
from forkchat.tools.schema import Tool
from forkchat.transport import MCPClient, ToolTransport

log = get_logger(__name__)


@dataclass
class AppContext:
    """Everything a conversation needs, built once at startup.

    Passed explicitly to :class:`forkchat.agent.Agent` and friends instead
    of living in module-level globals.
    """

    config: Config
    repository: MessageRepository
    transport: ToolTransport
    tool_catalog: dict[str, dict[str, Tool]] = field(default_factory=dict)
    provider_factory: Callable[[PresetConfig], LLMProvider] = create_provider

    @classmethod
    async def start(cls, config: Config, with_tools: bool = True) -> "AppContext":
        """Configure logging, open storage and start the MCP servers.

        With ``with_tools=False`` no server is spawned and the tool catalog
        stays empty, which is enough for storage-only commands.
        """
        configure_logging(config)

        repository = SQLiteMessageRepository(config.session.path)
        transport = MCPClient(config.mcp_servers)
        catalog: dict[str, dict[str, Tool]] = {}
        try:
            if with_tools:
                await transport.start()
                catalog = await transport.list_tools()
        except BaseException:
            await transport.close()
            await repository.close()
            raise

        log.info(
            "Runtime started",
            db=str(config.session.path),
            servers=len(catalog),
            tools=sum(len(tools) for tools in catalog.values()),
        )
        return cls(config=config, repository=repository, transport=transport, tool_catalog=catalog)

    def create_provider(self, preset: PresetConfig) -> LLMProvider:
        return self.provider_factory(preset)

    async def close(self) -> None:
        """Stop the MCP servers and close storage."""
        try:
            await self.transport.close()
        finally:
            await self.repository.close()
