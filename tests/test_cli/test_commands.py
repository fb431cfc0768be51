import importlib
from pathlib import Path

import yaml
from rich.console import Console
from typer.testing import CliRunner

import forkchat.runtime_context as runtime_module
from forkchat import __version__
from forkchat.llm import LLMProvider
from forkchat.llm.types import StreamComplete, StreamText
from forkchat.main import app
from forkchat.runtime_context import AppContext
from forkchat.tools import Tool
from forkchat.transport import ToolTransport

main_module = importlib.import_module("forkchat.main")

runner = CliRunner()

CATALOG = {
    "fs": {
        "read_file": Tool.from_input_schema(
            "read_file",
            "Read a file",
            {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "encoding": {"type": "string", "enum": ["utf-8", "latin-1"]},
                },
                "required": ["path"],
            },
        ),
        "write_file": Tool.from_input_schema("write_file", "Write a file", {"type": "object"}),
    },
    "web": {
        "fetch": Tool.from_input_schema("fetch", "Fetch a URL", {"type": "object"}),
    },
}


class ReplyProvider(LLMProvider):
    def __init__(self, reply: str):
        self.reply = reply

    async def generate(self, history, tools=None, system_message=""):
        yield StreamText(content=self.reply)
        yield StreamComplete(content=self.reply)


class CatalogTransport(ToolTransport):
    """Stands in for the MCP client; serves a fixed catalog."""

    def __init__(self, servers):
        self.servers = servers

    async def start(self):
        return None

    async def list_tools(self):
        return CATALOG

    async def call_tool(self, server, tool, arguments):
        return ""


def _write_config(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "forkchat.yaml"
    path.write_text(
        (
            "session:\n"
            f"  path: {tmp_path / 'chat.db'}\n"
            "logging:\n"
            "  level: ERROR\n"
        )
        + extra,
        encoding="utf-8",
    )
    return path

def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_threads_when_empty(tmp_path: Path):
    cfg = _write_config(tmp_path)

    result = runner.invoke(app, ["threads", "-c", str(cfg)])

    assert result.exit_code == 0
    assert "No threads yet." in result.output


def test_view_without_threads_fails(tmp_path: Path):
    cfg = _write_config(tmp_path)

    result = runner.invoke(app, ["view", "-c", str(cfg)])

    assert result.exit_code == 1


def test_send_view_and_delete(monkeypatch, tmp_path: Path):
    cfg = _write_config(tmp_path)
    monkeypatch.setattr(AppContext, "create_provider", lambda self, preset: ReplyProvider("Hi there"))

    result = runner.invoke(app, ["send", "hello", "--new", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    assert "Hi there" in result.output

    result = runner.invoke(app, ["view", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    assert "hello" in result.output
    assert "ollama/llama3.2" in result.output

    result = runner.invoke(app, ["rm-last", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    assert "Deleted 1 message(s)." in result.output

    result = runner.invoke(app, ["threads", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    assert "Threads" in result.output


def test_summary_command_stores_summary(monkeypatch, tmp_path: Path):
    cfg = _write_config(tmp_path)
    replies = iter(["Sure.", "Greeting exchange"])
    monkeypatch.setattr(
        AppContext, "create_provider", lambda self, preset: ReplyProvider(next(replies))
    )

    assert runner.invoke(app, ["send", "hi", "-c", str(cfg)]).exit_code == 0

    result = runner.invoke(app, ["summary", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    assert "Greeting exchange" in result.output

    result = runner.invoke(app, ["threads", "-c", str(cfg)])
    assert "Greeting exchange" in result.output


TOOLSETS = """
presets:
  default:
    toolsets: [files]
toolsets:
  files:
    servers:
      fs:
        allowed_tools:
          read_file:
            require_approval: false
            preset_parameters:
              path: /srv/notes.txt
"""


def test_tools_lists_every_server(monkeypatch, tmp_path: Path):
    cfg = _write_config(tmp_path)
    monkeypatch.setattr(runtime_module, "MCPClient", CatalogTransport)
    monkeypatch.setattr(main_module, "console", Console(width=200))

    result = runner.invoke(app, ["tools", "-c", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "fs__read_file" in result.output
    assert "fs__write_file" in result.output
    assert "web__fetch" in result.output
    assert "path*: string" in result.output
    assert "encoding: string [utf-8, latin-1]" in result.output


def test_tools_for_a_preset_shows_approval_and_presets(monkeypatch, tmp_path: Path):
    cfg = _write_config(tmp_path, TOOLSETS)
    monkeypatch.setattr(runtime_module, "MCPClient", CatalogTransport)
    monkeypatch.setattr(main_module, "console", Console(width=200))

    result = runner.invoke(app, ["tools", "-p", "default", "-c", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "fs__read_file" in result.output
    assert "path=/srv/notes.txt" in result.output
    assert "auto" in result.output
    assert "path*" not in result.output
    assert "web__fetch" not in result.output


def test_tools_with_unknown_preset_fails(monkeypatch, tmp_path: Path):
    cfg = _write_config(tmp_path)
    monkeypatch.setattr(runtime_module, "MCPClient", CatalogTransport)

    result = runner.invoke(app, ["tools", "-p", "missing", "-c", str(cfg)])

    assert result.exit_code == 1


def test_config_shows_effective_settings(tmp_path: Path):
    cfg = _write_config(tmp_path, TOOLSETS)

    result = runner.invoke(app, ["config", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    shown = yaml.safe_load(result.output)
    assert shown["logging"]["level"] == "ERROR"
    assert shown["presets"]["default"]["toolsets"] == ["files"]

    result = runner.invoke(app, ["config", "logging.level", "-c", str(cfg)])
    assert result.exit_code == 0, result.output
    assert yaml.safe_load(result.output) == {"level": "ERROR"}

    result = runner.invoke(app, ["config", "logging.colour", "-c", str(cfg)])
    assert result.exit_code == 1
