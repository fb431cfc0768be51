"""Command line interface for forkchat."""

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from forkchat import __version__
from forkchat.agent import Agent, TurnFailed, TurnOutcome
from forkchat.config import Config
from forkchat.events import (
    AgentEvent,
    ErrorEvent,
    NewMessage,
    TextChunk,
    ToolApprovalRequested,
    ToolArgumentChunk,
    ToolArgumentError,
    ToolCallStart,
    ToolResult,
)
from forkchat.exceptions import ForkchatError, ThreadNotFoundError
from forkchat.runtime_context import AppContext
from forkchat.session.models import Role, Thread
from forkchat.summary import ThreadSummarizer
from forkchat.tools import Tool, ToolRegistry, ToolWithApproval, qualify

T = TypeVar("T")

app = typer.Typer(help="forkchat - branching conversations with tool-using models")
console = Console()
err_console = Console(stderr=True)

ConfigOption = typer.Option("", "-c", "--config", help="Path to config file")
ThreadOption = typer.Option("", "-t", "--thread", help="Thread ID prefix (default: most recent)")
PresetOption = typer.Option("", "-p", "--preset", help="Model preset")
VerboseOption = typer.Option(False, "-v", "--verbose", help="Debug logging")


def _load_config(config: str, verbose: bool = False) -> Config:
    cfg = Config.load(config or None)
    if verbose:
        cfg.logging.level = "DEBUG"
    return cfg


def _run(
    config: str,
    verbose: bool,
    work: Callable[[AppContext], Awaitable[T]],
    with_tools: bool = True,
) -> T:
    """Start the runtime, run ``work`` and shut the runtime down."""

    async def runner() -> T:
        context = await AppContext.start(_load_config(config, verbose), with_tools=with_tools)
        try:
            return await work(context)
        finally:
            await context.close()

    try:
        return asyncio.run(runner())
    except ForkchatError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _resolve_thread(context: AppContext, prefix: str) -> Thread:
    if prefix:
        return await context.repository.find_thread_by_prefix(prefix)
    thread = await context.repository.get_most_recent_thread()
    if thread is None:
        raise ThreadNotFoundError("(no threads yet)")
    return thread


def _render_event(event: AgentEvent) -> None:
    if isinstance(event, TextChunk):
        console.print(event.content, end="", markup=False, highlight=False)
    elif isinstance(event, ToolCallStart):
        console.print(f"\n[cyan]→ {event.name}[/cyan] ", end="")
    elif isinstance(event, ToolArgumentChunk):
        console.print(event.chunk, end="", style="dim", markup=False, highlight=False)
    elif isinstance(event, ToolArgumentError):
        console.print(f"\n[red]Could not parse arguments of {event.name}: {event.error}[/red]")
    elif isinstance(event, NewMessage):
        message = event.message
        if message.role == Role.ASSISTANT:
            console.print()
        console.print(f"[dim]{message.role.value} message {message.id[:8]}[/dim]")
    elif isinstance(event, ToolResult):
        if event.ok:
            console.print(f"[green]✓ {event.name}[/green] [dim]{event.call_id}[/dim]")
        else:
            console.print(f"[red]✗ {event.name}[/red] [dim]{event.call_id}[/dim] {event.error}")
    elif isinstance(event, ToolApprovalRequested):
        lines = [f"{call.name} {call.arguments}" for call in event.tool_calls]
        console.print(
            Panel(
                Text("\n".join(lines)),
                title="Tool calls need approval",
                subtitle=f"forkchat approve {event.message.id[:8]}  |  forkchat reject {event.message.id[:8]}",
                border_style="yellow",
            )
        )
    elif isinstance(event, ErrorEvent):
        err_console.print(f"\n[red]Error:[/red] {event.error}")


async def _run_turn(turn: Callable[[asyncio.Event], Awaitable[TurnOutcome]]) -> TurnOutcome:
    """Run a turn; Ctrl-C aborts it cleanly instead of killing the process."""
    abort_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort_event.set)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await turn(abort_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _exit_for(outcome: TurnOutcome) -> None:
    if isinstance(outcome, TurnFailed):
        raise typer.Exit(1)


@app.command()
def send(
    message: str = typer.Argument(..., help="Message to send"),
    thread: str = ThreadOption,
    new: bool = typer.Option(False, "-n", "--new", help="Start a new thread"),
    parent: str = typer.Option("", "--parent", help="Parent message ID prefix (fork point)"),
    preset: str = PresetOption,
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Send a message and stream the reply."""

    async def work(context: AppContext) -> TurnOutcome:
        if new:
            target = await context.repository.create_thread()
        else:
            try:
                target = await _resolve_thread(context, thread)
            except ThreadNotFoundError:
                if thread:
                    raise
                target = await context.repository.create_thread()

        parent_id = None
        if parent:
            parent_id = (await context.repository.find_message_by_prefix(target.id, parent)).id

        agent = Agent(context, preset or None)
        try:
            return await _run_turn(
                lambda abort: agent.send_message(
                    target.id, message, parent_id=parent_id, on_event=_render_event, abort_event=abort
                )
            )
        finally:
            await agent.close()

    _exit_for(_run(config, verbose, work))


@app.command()
def approve(
    message_id: str = typer.Argument(..., help="Pending assistant message ID prefix"),
    thread: str = ThreadOption,
    preset: str = PresetOption,
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Approve pending tool calls and continue the conversation."""

    async def work(context: AppContext) -> TurnOutcome:
        target = await _resolve_thread(context, thread)
        pending = await context.repository.find_message_by_prefix(target.id, message_id)
        agent = Agent(context, preset or None)
        try:
            return await _run_turn(
                lambda abort: agent.approve(pending.id, on_event=_render_event, abort_event=abort)
            )
        finally:
            await agent.close()

    _exit_for(_run(config, verbose, work))


@app.command()
def reject(
    message_id: str = typer.Argument(..., help="Pending assistant message ID prefix"),
    reason: str = typer.Option("User declined", "-r", "--reason", help="Reason given to the model"),
    thread: str = ThreadOption,
    preset: str = PresetOption,
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Deny pending tool calls and ask the model for another approach."""

    async def work(context: AppContext) -> TurnOutcome:
        target = await _resolve_thread(context, thread)
        pending = await context.repository.find_message_by_prefix(target.id, message_id)
        agent = Agent(context, preset or None)
        try:
            return await _run_turn(
                lambda abort: agent.reject(pending.id, reason, on_event=_render_event, abort_event=abort)
            )
        finally:
            await agent.close()

    _exit_for(_run(config, verbose, work))


@app.command()
def edit(
    message_id: str = typer.Argument(..., help="Human message ID prefix"),
    content: str = typer.Argument(..., help="Replacement content"),
    thread: str = ThreadOption,
    preset: str = PresetOption,
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Fork the conversation from an edited version of a message."""

    async def work(context: AppContext) -> TurnOutcome:
        target = await _resolve_thread(context, thread)
        original = await context.repository.find_message_by_prefix(target.id, message_id)
        agent = Agent(context, preset or None)
        try:
            return await _run_turn(
                lambda abort: agent.edit(original.id, content, on_event=_render_event, abort_event=abort)
            )
        finally:
            await agent.close()

    _exit_for(_run(config, verbose, work))


@app.command()
def threads(
    limit: int = typer.Option(10, "-l", "--limit", help="Number of threads (0 for all)"),
    config: str = ConfigOption,
) -> None:
    """List recent threads."""

    async def work(context: AppContext) -> list[Thread]:
        return await context.repository.list_threads(limit=limit)

    items = _run(config, False, work, with_tools=False)
    if not items:
        console.print("No threads yet.")
        return

    table = Table(title="Threads")
    table.add_column("ID", style="cyan")
    table.add_column("Created")
    table.add_column("Summary")
    for item in items:
        table.add_row(item.id[:8], item.created_at.strftime("%Y-%m-%d %H:%M"), item.summary)
    console.print(table)


@app.command()
def view(
    thread: str = typer.Argument("", help="Thread ID prefix (default: most recent)"),
    head: str = typer.Option("", "--head", help="Branch head message ID prefix"),
    forward: bool = typer.Option(False, "-f", "--forward", help="Follow the newest replies after the head"),
    config: str = ConfigOption,
) -> None:
    """Show one branch of a thread."""

    async def work(context: AppContext):
        target = await _resolve_thread(context, thread)
        head_id = None
        if head:
            head_id = (await context.repository.find_message_by_prefix(target.id, head)).id
        return target, await context.repository.get_messages(target.id, head_id, extend_forward=forward)

    target, messages = _run(config, False, work, with_tools=False)
    console.print(f"[bold]Thread {target.id}[/bold] {target.summary}")
    for message in messages:
        header = f"{message.role.value} · {message.id[:8]}"
        if message.model_name:
            header += f" · {message.provider}/{message.model_name}"
        body = message.content
        if message.tool_calls:
            calls = "\n".join(f"→ {call.name} {call.arguments}" for call in message.tool_calls)
            body = f"{body}\n{calls}" if body else calls
        console.print(Panel(Text(body), title=header, title_align="left"))


@app.command()
def summary(
    thread: str = typer.Argument("", help="Thread ID prefix (default: most recent)"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Generate and store a thread summary."""

    async def work(context: AppContext) -> str:
        target = await _resolve_thread(context, thread)
        return await ThreadSummarizer(context).summarize(target.id)

    console.print(_run(config, verbose, work, with_tools=False))


@app.command("rm-last")
def rm_last(
    thread: str = typer.Argument("", help="Thread ID prefix (default: most recent)"),
    count: int = typer.Option(1, "-n", "--count", help="Number of messages to delete"),
    config: str = ConfigOption,
) -> None:
    """Delete the most recent messages of a thread."""

    async def work(context: AppContext) -> int:
        target = await _resolve_thread(context, thread)
        return await context.repository.delete_last_messages(target.id, count)

    deleted = _run(config, False, work, with_tools=False)
    console.print(f"Deleted {deleted} message(s).")


@app.command("rm")
def remove(
    thread: str = typer.Argument(..., help="Thread ID prefix"),
    config: str = ConfigOption,
) -> None:
    """Delete a thread and all of its messages."""

    async def work(context: AppContext) -> bool:
        target = await context.repository.find_thread_by_prefix(thread)
        return await context.repository.delete_thread(target.id)

    if _run(config, False, work, with_tools=False):
        console.print("Thread deleted.")


def _format_parameters(tool: Tool) -> str:
    required = set(tool.parameters.required)
    lines = []
    for name, prop in tool.parameters.properties.items():
        line = f"{name}{'*' if name in required else ''}: {prop.type or 'any'}"
        if prop.enum:
            line += " [" + ", ".join(str(option) for option in prop.enum) + "]"
        lines.append(line)
    return "\n".join(lines)


@app.command()
def tools(
    preset: str = typer.Option("", "-p", "--preset", help="Only show tools enabled by this preset"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """List the tools offered by the configured MCP servers."""

    async def work(context: AppContext) -> dict[str, dict[str, Tool | ToolWithApproval]]:
        if not preset:
            return dict(context.tool_catalog)
        _, preset_config = context.config.get_preset(preset)
        registry = ToolRegistry(context.tool_catalog, preset_config.toolsets, context.config.toolsets)
        return dict(registry.tools)

    catalog = _run(config, verbose, work)
    if not any(catalog.values()):
        console.print("No tools available.")
        return

    for server, entries in catalog.items():
        table = Table(title=f"Server {server}")
        table.add_column("Tool", style="cyan")
        table.add_column("Description")
        table.add_column("Parameters", style="dim")
        if preset:
            table.add_column("Approval")
            table.add_column("Presets")

        for name, entry in entries.items():
            if isinstance(entry, ToolWithApproval):
                presets = ", ".join(f"{key}={value}" for key, value in entry.preset_parameters.items())
                table.add_row(
                    qualify(server, name),
                    Text(entry.tool.description),
                    Text(_format_parameters(entry.tool)),
                    "required" if entry.require_approval else "auto",
                    Text(presets),
                )
            else:
                table.add_row(
                    qualify(server, name), Text(entry.description), Text(_format_parameters(entry))
                )
        console.print(table)


@app.command("config")
def show_config(
    key: str = typer.Argument("", help="Dotted key to show, e.g. presets.default"),
    config: str = ConfigOption,
) -> None:
    """Show the effective configuration as YAML."""
    try:
        rendered = _load_config(config).to_yaml(key)
    except ForkchatError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(rendered, end="", markup=False, highlight=False, soft_wrap=True)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"forkchat v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
