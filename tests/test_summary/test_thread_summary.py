import pytest
import pytest_asyncio

from forkchat.config import Config, InternalConfig, PresetConfig
from forkchat.exceptions import LLMAPIError, LLMError
from forkchat.llm import LLMProvider
from forkchat.llm.types import StreamComplete, StreamError, StreamText
from forkchat.runtime_context import AppContext
from forkchat.session import Message, Role, SQLiteMessageRepository
from forkchat.summary import EMPTY_SUMMARY, ThreadSummarizer
from forkchat.transport import ToolTransport


class RecordingProvider(LLMProvider):
    def __init__(self, reply: str = "  Trip to Lisbon  ", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.requests: list[tuple[list[Message], object, str]] = []
        self.closed = False

    async def generate(self, history, tools=None, system_message=""):
        self.requests.append((list(history), tools, system_message))
        if self.error is not None:
            yield StreamError(error=self.error)
            return
        yield StreamComplete(content=self.reply)

    async def close(self) -> None:
        self.closed = True


class TruncatedProvider(RecordingProvider):
    """Streams text but never completes the message."""

    async def generate(self, history, tools=None, system_message=""):
        self.requests.append((list(history), tools, system_message))
        yield StreamText(content="Half a summ")


class NoTools(ToolTransport):
    async def list_tools(self):
        return {}

    async def call_tool(self, server, tool, arguments):
        raise AssertionError("summaries never call tools")


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = SQLiteMessageRepository(tmp_path / "chat.db")
    try:
        yield repo
    finally:
        await repo.close()


def _context(repository, provider, seen_presets=None) -> AppContext:
    config = Config(
        presets={"default": PresetConfig(model="big"), "tiny": PresetConfig(model="tiny")},
        internal=InternalConfig(preset="tiny", summary_prompt="Summarize:\n\n"),
    )

    def factory(preset):
        if seen_presets is not None:
            seen_presets.append(preset.model)
        return provider

    return AppContext(config=config, repository=repository, transport=NoTools(), provider_factory=factory)


@pytest.mark.asyncio
async def test_summarize_stores_stripped_summary(repository):
    thread = await repository.create_thread()
    question = await repository.add_message(
        Message(thread_id=thread.id, role=Role.HUMAN, content="Plan a trip to Lisbon")
    )
    await repository.add_message(
        Message(thread_id=thread.id, role=Role.ASSISTANT, content="Sure!", parent_id=question.id)
    )
    provider = RecordingProvider()
    presets: list[str] = []
    summarizer = ThreadSummarizer(_context(repository, provider, presets))

    summary = await summarizer.summarize(thread.id)

    assert summary == "Trip to Lisbon"
    assert (await repository.get_thread(thread.id)).summary == "Trip to Lisbon"
    assert presets == ["tiny"]
    assert provider.closed

    [(history, tools, system_message)] = provider.requests
    assert tools is None
    assert system_message == ""
    assert history[0].role == Role.HUMAN
    assert history[0].content == (
        "Summarize:\n\nhuman: Plan a trip to Lisbon\nassistant: Sure!\n"
    )


@pytest.mark.asyncio
async def test_empty_thread_is_summarized_without_a_model_call(repository):
    thread = await repository.create_thread()
    provider = RecordingProvider()

    summary = await ThreadSummarizer(_context(repository, provider)).summarize(thread.id)

    assert summary == EMPTY_SUMMARY
    assert provider.requests == []
    assert (await repository.get_thread(thread.id)).summary == "[empty]"


@pytest.mark.asyncio
async def test_model_error_leaves_summary_unchanged(repository):
    thread = await repository.create_thread(summary="old")
    await repository.add_message(Message(thread_id=thread.id, role=Role.HUMAN, content="hi"))
    provider = RecordingProvider(error=LLMAPIError("down"))

    with pytest.raises(LLMAPIError):
        await ThreadSummarizer(_context(repository, provider)).summarize(thread.id)

    assert provider.closed
    assert (await repository.get_thread(thread.id)).summary == "old"


@pytest.mark.asyncio
async def test_incomplete_stream_leaves_summary_unchanged(repository):
    thread = await repository.create_thread(summary="old")
    await repository.add_message(Message(thread_id=thread.id, role=Role.HUMAN, content="hi"))
    provider = TruncatedProvider()

    with pytest.raises(LLMError, match="without a completed message"):
        await ThreadSummarizer(_context(repository, provider)).summarize(thread.id)

    assert provider.closed
    assert (await repository.get_thread(thread.id)).summary == "old"
