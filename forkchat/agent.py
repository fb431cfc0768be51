"""Agent orchestration loop.

One call to :meth:`Agent.dispatch` drives a conversation forward from a
message until the model answers without tools, a tool call needs
approval, or an error ends the turn. Tool-call chains are followed with a
loop, never recursion, so arbitrarily long chains do not grow the stack.
"""

import asyncio
import inspect
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Union

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
from forkchat.exceptions import (
    AgentError,
    ConfigurationError,
    JsonParseError,
    ToolNotFoundError,
    TurnCancelledError,
)
from forkchat.llm import (
    IncrementalJsonParser,
    StreamComplete,
    StreamError,
    StreamEvent,
    StreamText,
    StreamToolCall,
    ToolCall,
)
from forkchat.logging import get_logger
from forkchat.runtime_context import AppContext
from forkchat.session.models import Message, Role
from forkchat.tools.registry import ToolRegistry

log = get_logger(__name__)

REPORT_HEADER = "Tool call results:\n\n"
REJECTION_TEMPLATE = "Function call denied: {reason}\nPlease suggest an alternative approach."

_STREAM_END = object()


# Turn outcomes


@dataclass
class TurnCompleted:
    """The model answered without tools.

    ``message`` is ``None`` when the stream ended without a completed
    message.
    """

    message: Message | None


@dataclass
class TurnNeedsApproval:
    """The turn is suspended on tool calls awaiting a decision."""

    message: Message
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class TurnFailed:
    error: Exception


TurnOutcome = Union[TurnCompleted, TurnNeedsApproval, TurnFailed]

EventHandler = Callable[[AgentEvent], Union[None, Awaitable[None]]]


@dataclass
class _CallOutcome:
    result: str = ""
    error: str | None = None


def render_tool_report(calls: list[ToolCall], outcomes: list[_CallOutcome]) -> str:
    """Render tool results as one report, one block per call in call order."""
    blocks = []
    for call, outcome in zip(calls, outcomes):
        block = f"Name: {call.name}\nID: {call.id}\nArguments: {call.arguments}\nResult:\n"
        if outcome.error is not None:
            block += f"Error: {outcome.error}\n"
        else:
            block += f"{outcome.result}\n"
        blocks.append(block)
    return REPORT_HEADER + "\n".join(blocks)


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def _wait_or_abort(awaitable: Awaitable[Any], abort_event: asyncio.Event) -> Any:
    """Await ``awaitable`` unless ``abort_event`` fires first.

    Raises:
        TurnCancelledError if the abort event was set first
    """
    work = asyncio.ensure_future(awaitable)
    abort_wait = asyncio.ensure_future(abort_event.wait())
    try:
        done, _ = await asyncio.wait({work, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _cancel_task(work)
        raise
    finally:
        await _cancel_task(abort_wait)

    if work in done:
        return work.result()
    await _cancel_task(work)
    raise TurnCancelledError()


async def _pump(stream: AsyncIterator[StreamEvent], queue: asyncio.Queue) -> None:
    """Move provider events onto ``queue``, ending with ``_STREAM_END``."""
    try:
        async with aclosing(stream):
            async for event in stream:
                await queue.put(event)
    except Exception as e:
        await queue.put(StreamError(error=e))
    await queue.put(_STREAM_END)


@dataclass
class _Turn:
    assistant: Message | None = None


class Agent:
    """Conversation driver for one model preset."""

    def __init__(self, context: AppContext, preset_name: str | None = None):
        """Resolve the preset, its prompts and its tools.

        Raises:
            ConfigurationError if the preset, a prompt, a toolset, a server
            or a tool it references is missing, or a trigger is not a valid
            regular expression
        """
        self.context = context
        self.config = context.config
        self.repository = context.repository
        self.transport = context.transport
        self.preset_name, self.preset = self.config.get_preset(preset_name)

        for name in self.preset.include_prompts:
            if name not in self.config.prompts:
                raise ConfigurationError(
                    f"Prompt {name!r} included by preset {self.preset_name!r} not found"
                )

        self._triggers: list[tuple[str, re.Pattern[str]]] = []
        for name, prompt in self.config.prompts.items():
            if not prompt.system_message_trigger:
                continue
            try:
                self._triggers.append((name, re.compile(prompt.system_message_trigger)))
            except re.error as e:
                raise ConfigurationError(f"Invalid trigger for prompt {name!r}: {e}") from e

        self.registry = ToolRegistry(context.tool_catalog, self.preset.toolsets, self.config.toolsets)
        self.provider = context.create_provider(self.preset)

    async def close(self) -> None:
        await self.provider.close()

    # System message

    def build_system_message(self, content: str, history: list[Message]) -> str:
        """Assemble the system message for a turn.

        Parts, in order: preset system text, explicitly included prompts,
        always-include prompts, prompts whose trigger matches the new
        content or the history, toolset system text, then system text of
        MCP servers with tools in scope. Each prompt is used at most once.
        """
        parts: list[str] = [self.preset.system_message]
        used: set[str] = set()

        def add_prompt(name: str) -> None:
            if name in used:
                return
            used.add(name)
            parts.append(self.config.prompts[name].content)

        for name in self.preset.include_prompts:
            add_prompt(name)

        for name, prompt in self.config.prompts.items():
            if prompt.include_in_system_message:
                add_prompt(name)

        if self._triggers:
            haystack = content + "".join("\n" + message.content for message in history)
            for name, pattern in self._triggers:
                if name not in used and pattern.search(haystack):
                    add_prompt(name)

        for toolset_name in self.preset.toolsets:
            toolset = self.config.toolsets.get(toolset_name)
            if toolset is not None:
                parts.append(toolset.system_message)

        for server in self.registry.servers_in_scope():
            server_config = self.config.mcp_servers.get(server)
            if server_config is not None:
                parts.append(server_config.system_message)

        return "\n\n".join(part for part in parts if part)

    # Orchestration

    async def dispatch(
        self,
        message: Message,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Drive the conversation forward from ``message``.

        ``message`` is a new or stored human/tool message, or a stored
        assistant message with tool calls (resume after approval).

        Yields events; every ``NewMessage`` follows a successful write.
        Model, transport and storage failures end the turn with an
        ``ErrorEvent`` instead of raising. Setting ``abort_event`` ends the
        turn with ``ErrorEvent(TurnCancelledError)``.
        """
        abort_event = abort_event or asyncio.Event()
        current = message

        try:
            await self.repository.get_thread(message.thread_id)

            while True:
                if abort_event.is_set():
                    raise TurnCancelledError()

                if current.role == Role.ASSISTANT:
                    if not current.is_persisted or not current.has_tool_calls:
                        raise AgentError("assistant message has no pending tool calls")

                    tool_message, results = await self._execute_tools(current, abort_event)
                    yield NewMessage(message=tool_message)
                    for result in results:
                        yield result
                    current = tool_message
                    continue

                if current.role not in (Role.HUMAN, Role.TOOL):
                    raise AgentError(f"unsupported message role: {current.role.value}")

                if not current.is_persisted:
                    await self.repository.add_message(current)
                    yield NewMessage(message=current)

                turn = _Turn()
                async with aclosing(self._generate(current, abort_event, turn)) as events:
                    async for event in events:
                        yield event

                assistant = turn.assistant
                if assistant is None:
                    log.debug("Stream ended without a message", thread_id=current.thread_id)
                    return

                if not assistant.tool_calls:
                    return

                if any(self.registry.requires_approval(call) for call in assistant.tool_calls):
                    log.info(
                        "Tool approval requested",
                        thread_id=assistant.thread_id,
                        message_id=assistant.id,
                        tools=[call.name for call in assistant.tool_calls],
                    )
                    yield ToolApprovalRequested(message=assistant, tool_calls=list(assistant.tool_calls))
                    return

                # All calls are auto-approved: the next iteration executes them.
                current = assistant

        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = TurnCancelledError() if abort_event.is_set() else e
            if isinstance(error, TurnCancelledError):
                log.info("Turn cancelled", thread_id=message.thread_id)
            else:
                log.error("Turn failed", thread_id=message.thread_id, error=str(error))
            yield ErrorEvent(error=error)

    async def _generate(
        self,
        message: Message,
        abort_event: asyncio.Event,
        turn: _Turn,
    ) -> AsyncIterator[AgentEvent]:
        """Stream one model reply to ``message`` and persist it."""
        history = await self.repository.get_messages(message.thread_id, head_id=message.id)
        system_message = self.build_system_message(
            message.content,
            [item for item in history if item.id != message.id],
        )
        log.debug(
            "Generating reply",
            thread_id=message.thread_id,
            message_id=message.id,
            history=len(history),
            tools=len(self.registry),
        )

        stream = self.provider.generate(history, self.registry.definitions(), system_message)
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(_pump(stream, queue))

        parsers: dict[str, IncrementalJsonParser] = {}
        call_names: dict[str, str] = {}
        failed_calls: set[str] = set()

        try:
            while True:
                event = await _wait_or_abort(queue.get(), abort_event)
                if event is _STREAM_END:
                    return

                if isinstance(event, StreamText):
                    yield TextChunk(content=event.content)

                elif isinstance(event, StreamToolCall):
                    if event.call_id not in parsers:
                        name = event.name
                        parsers[event.call_id] = IncrementalJsonParser(self._argument_schema(name))
                        call_names[event.call_id] = name
                        yield ToolCallStart(call_id=event.call_id, name=name)
                    if event.call_id in failed_calls or not event.arguments:
                        continue

                    name = call_names[event.call_id]
                    try:
                        updates = parsers[event.call_id].process_chunk(event.arguments)
                    except JsonParseError as e:
                        failed_calls.add(event.call_id)
                        for update in e.updates:
                            yield ToolArgumentChunk(
                                call_id=event.call_id, name=name, path=update.path, chunk=update.chunk
                            )
                        log.warning("Tool arguments failed to parse", call_id=event.call_id, tool=name, error=str(e))
                        yield ToolArgumentError(call_id=event.call_id, name=name, error=e)
                        continue

                    for update in updates:
                        yield ToolArgumentChunk(
                            call_id=event.call_id, name=name, path=update.path, chunk=update.chunk
                        )

                elif isinstance(event, StreamComplete):
                    assistant = Message(
                        thread_id=message.thread_id,
                        role=Role.ASSISTANT,
                        content=event.content,
                        parent_id=message.id,
                        tool_calls=list(event.tool_calls),
                        model_name=self.preset.model,
                        provider=self.preset.provider,
                    )
                    await self.repository.add_message(assistant)
                    turn.assistant = assistant
                    log.info(
                        "Assistant message stored",
                        thread_id=assistant.thread_id,
                        message_id=assistant.id,
                        tool_calls=len(assistant.tool_calls),
                    )
                    yield NewMessage(message=assistant)
                    return

                elif isinstance(event, StreamError):
                    raise event.error
        finally:
            await _cancel_task(pump)

    def _argument_schema(self, name: str) -> Any:
        try:
            return self.registry.lookup(name).tool.parameters
        except ToolNotFoundError:
            return None

    async def _execute_tools(
        self,
        assistant: Message,
        abort_event: asyncio.Event,
    ) -> tuple[Message, list[ToolResult]]:
        """Run every tool call concurrently and store the combined report.

        Nothing is stored if the turn is aborted before all calls finish.
        """
        calls = assistant.tool_calls
        queue: asyncio.Queue[tuple[int, _CallOutcome]] = asyncio.Queue(maxsize=len(calls))
        tasks = [
            asyncio.create_task(self._run_call(index, call, queue))
            for index, call in enumerate(calls)
        ]

        outcomes: list[_CallOutcome] = [_CallOutcome() for _ in calls]
        try:
            for _ in calls:
                index, outcome = await _wait_or_abort(queue.get(), abort_event)
                outcomes[index] = outcome
        finally:
            for task in tasks:
                await _cancel_task(task)

        report = render_tool_report(calls, outcomes)
        tool_message = await self.repository.add_message(
            Message(
                thread_id=assistant.thread_id,
                role=Role.TOOL,
                content=report,
                parent_id=assistant.id,
            )
        )
        log.info(
            "Tools executed",
            thread_id=assistant.thread_id,
            message_id=tool_message.id,
            count=len(calls),
            failed=sum(1 for outcome in outcomes if outcome.error is not None),
        )

        results = [
            ToolResult(call_id=call.id, name=call.name, result=outcome.result, error=outcome.error)
            for call, outcome in zip(calls, outcomes)
        ]
        return tool_message, results

    async def _run_call(
        self,
        index: int,
        call: ToolCall,
        queue: asyncio.Queue[tuple[int, _CallOutcome]],
    ) -> None:
        try:
            result = await self.execute_call(call)
            outcome = _CallOutcome(result=result)
        except Exception as e:
            log.warning("Tool call failed", tool=call.name, call_id=call.id, error=str(e))
            outcome = _CallOutcome(error=str(e))
        await queue.put((index, outcome))

    async def execute_call(self, call: ToolCall) -> str:
        """Validate, merge presets and invoke one tool call.

        Raises:
            ToolNotFoundError, ToolArgumentError or a transport ToolError
        """
        entry, arguments = self.registry.prepare_call(call)
        log.info("Executing tool", tool=call.name, call_id=call.id)
        return await self.transport.call_tool(entry.server, entry.tool.name, arguments)

    # Turn entry points

    async def run(
        self,
        message: Message,
        on_event: EventHandler | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Drain :meth:`dispatch` and return the turn's outcome."""
        outcome: TurnOutcome | None = None
        last_message: Message | None = None

        async for event in self.dispatch(message, abort_event):
            if on_event is not None:
                handled = on_event(event)
                if inspect.isawaitable(handled):
                    await handled

            if isinstance(event, NewMessage):
                last_message = event.message
            elif isinstance(event, ToolApprovalRequested):
                outcome = TurnNeedsApproval(message=event.message, tool_calls=event.tool_calls)
            elif isinstance(event, ErrorEvent):
                outcome = TurnFailed(error=event.error)

        if outcome is not None:
            return outcome
        if last_message is not None and last_message.role == Role.ASSISTANT:
            return TurnCompleted(message=last_message)
        return TurnCompleted(message=None)

    async def send_message(
        self,
        thread_id: str,
        content: str,
        parent_id: str | None = None,
        role: Role = Role.HUMAN,
        on_event: EventHandler | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Send a new message, by default continuing the most recent branch."""
        if parent_id is None:
            branch = await self.repository.get_messages(thread_id)
            if branch:
                parent_id = branch[-1].id

        message = Message(thread_id=thread_id, role=role, content=content, parent_id=parent_id)
        return await self.run(message, on_event=on_event, abort_event=abort_event)

    async def _pending_message(self, message_id: str) -> Message:
        message = await self.repository.get_message(message_id)
        if message.role != Role.ASSISTANT:
            raise AgentError("message must have role assistant")
        if not message.has_tool_calls:
            raise AgentError("no tool calls found in message")
        return message

    async def approve(
        self,
        message_id: str,
        on_event: EventHandler | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Execute the pending tool calls of an assistant message and continue."""
        message = await self._pending_message(message_id)
        return await self.run(message, on_event=on_event, abort_event=abort_event)

    async def reject(
        self,
        message_id: str,
        reason: str,
        on_event: EventHandler | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Deny the pending tool calls and let the model try another way."""
        message = await self._pending_message(message_id)
        rejection = Message(
            thread_id=message.thread_id,
            role=Role.HUMAN,
            content=REJECTION_TEMPLATE.format(reason=reason),
            parent_id=message.id,
        )
        return await self.run(rejection, on_event=on_event, abort_event=abort_event)

    async def edit(
        self,
        message_id: str,
        content: str,
        on_event: EventHandler | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Fork the conversation with a new version of a human message."""
        original = await self.repository.get_message(message_id)
        if original.role != Role.HUMAN:
            raise AgentError("only human messages can be edited")
        sibling = Message(
            thread_id=original.thread_id,
            role=Role.HUMAN,
            content=content,
            parent_id=original.parent_id,
        )
        return await self.run(sibling, on_event=on_event, abort_event=abort_event)
