"""Configuration management for forkchat."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from forkchat.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.forkchat/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.forkchat/forkchat.db").expanduser()
LOCAL_CONFIG_FILENAME = "forkchat.yaml"

DEFAULT_SUMMARY_PROMPT = (
    "Please provide a concise summary of the following conversation. "
    "Focus on the main topics discussed and key points. "
    "The purpose is to quickly identify a conversation in a list. "
    "The summary should be less than 8 words long.\n\n"
)


class PresetConfig(BaseModel):
    """Model preset: provider settings plus the prompts and toolsets it uses."""

    provider: str = "ollama"
    model: str = "llama3.2"
    base_url: str = ""
    api_key: str = ""
    max_tokens: int = 1000
    temperature: float = 0.7
    toolsets: list[str] = Field(default_factory=list)
    system_message: str = ""
    include_prompts: list[str] = Field(default_factory=list)


class PromptConfig(BaseModel):
    """Reusable prompt snippet for the system message."""

    content: str = ""
    include_in_system_message: bool = False
    # Regex; when it matches the new message or history the prompt is included.
    system_message_trigger: str = ""


class ToolConfig(BaseModel):
    """Per-tool overrides inside a toolset."""

    require_approval: bool = True
    preset_parameters: dict[str, Any] = Field(default_factory=dict)


class ServerToolsConfig(BaseModel):
    """Tools allowed from one MCP server. Empty ``allowed_tools`` means all."""

    require_approval: bool = True
    allowed_tools: dict[str, ToolConfig] = Field(default_factory=dict)


class ToolsetConfig(BaseModel):
    """Named bundle of per-server tool allow-lists."""

    servers: dict[str, ServerToolsConfig] = Field(default_factory=dict)
    system_message: str = ""


class MCPServerConfig(BaseModel):
    """MCP server subprocess configuration."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    system_message: str = ""


class InternalConfig(BaseModel):
    """Settings for internal model calls such as thread summaries."""

    preset: str = ""
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT


class SessionConfig(BaseModel):
    """Conversation storage configuration."""

    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for forkchat."""

    presets: dict[str, PresetConfig] = Field(
        default_factory=lambda: {"default": PresetConfig()}
    )
    default_preset: str = "default"
    prompts: dict[str, PromptConfig] = Field(default_factory=dict)
    toolsets: dict[str, ToolsetConfig] = Field(default_factory=dict)
    mcp_servers: dict[str, MCPServerConfig] = Field(default_factory=dict)
    internal: InternalConfig = Field(default_factory=InternalConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="FORKCHAT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables are applied by pydantic-settings."""
        return cls.from_yaml(path)

    def to_yaml(self, key: str = "") -> str:
        """Render the effective configuration, or one dotted section of it, as YAML.

        Raises:
            ConfigurationError if ``key`` does not name a configuration entry
        """
        data: Any = self.model_dump(mode="json")
        if key:
            for part in key.split("."):
                if not isinstance(data, dict) or part not in data:
                    raise ConfigurationError(f"Configuration key '{key}' not found")
                data = data[part]
            data = {key.rsplit(".", 1)[-1]: data}
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    def get_preset(self, name: str | None = None) -> tuple[str, PresetConfig]:
        """Return ``(name, preset)``, falling back to ``default_preset``.

        Raises:
            ConfigurationError if the preset is not configured
        """
        key = (name or self.default_preset or "").strip()
        preset = self.presets.get(key)
        if preset is None:
            raise ConfigurationError(f"Preset '{key}' not found in configuration")
        return key, preset
