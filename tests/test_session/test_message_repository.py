import asyncio

import pytest
import pytest_asyncio

from forkchat.exceptions import (
    AmbiguousPrefixError,
    InvalidParentError,
    MessageNotFoundError,
    ThreadNotFoundError,
)
from forkchat.llm.types import ToolCall
from forkchat.session import Message, Role, SQLiteMessageRepository


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = SQLiteMessageRepository(tmp_path / "forkchat.db")
    try:
        yield repo
    finally:
        await repo.close()


async def _add(repo, thread_id, content, parent=None, role=Role.HUMAN, **kwargs) -> Message:
    return await repo.add_message(
        Message(
            thread_id=thread_id,
            role=role,
            content=content,
            parent_id=parent.id if parent else None,
            **kwargs,
        )
    )


@pytest.mark.asyncio
async def test_repository_creates_database_file(tmp_path):
    db_path = tmp_path / "nested" / "chat.db"
    repo = SQLiteMessageRepository(db_path)
    try:
        await repo.create_thread()
        assert db_path.exists()
    finally:
        await repo.close()


@pytest.mark.asyncio
async def test_add_message_assigns_identity_and_round_trips(repository):
    thread = await repository.create_thread()
    call = ToolCall(id="call-1", name="fs__read", arguments='{"path": "a.txt"}')

    stored = await _add(
        repository,
        thread.id,
        "reading",
        role=Role.ASSISTANT,
        tool_calls=[call],
        model_name="llama3.2",
        provider="ollama",
    )

    assert stored.id is not None
    assert stored.created_at is not None

    loaded = await repository.get_message(stored.id)
    assert loaded.role == Role.ASSISTANT
    assert loaded.content == "reading"
    assert loaded.tool_calls == [call]
    assert loaded.model_name == "llama3.2"
    assert loaded.provider == "ollama"
    assert loaded.created_at == stored.created_at


@pytest.mark.asyncio
async def test_children_are_always_newer_than_parents(repository):
    thread = await repository.create_thread()
    root = await _add(repository, thread.id, "root")
    child = await _add(repository, thread.id, "child", parent=root)
    grandchild = await _add(repository, thread.id, "grandchild", parent=child)

    assert root.created_at < child.created_at < grandchild.created_at


@pytest.mark.asyncio
async def test_get_messages_reconstructs_branches(repository):
    thread = await repository.create_thread()
    question = await _add(repository, thread.id, "question")
    first = await _add(repository, thread.id, "first answer", parent=question, role=Role.ASSISTANT)
    follow_up = await _add(repository, thread.id, "follow up", parent=first)
    second = await _add(repository, thread.id, "regenerated", parent=question, role=Role.ASSISTANT)

    latest = await repository.get_messages(thread.id)
    assert [m.content for m in latest] == ["question", "regenerated"]

    old_branch = await repository.get_messages(thread.id, head_id=follow_up.id)
    assert [m.content for m in old_branch] == ["question", "first answer", "follow up"]

    forward = await repository.get_messages(thread.id, head_id=question.id, extend_forward=True)
    assert [m.id for m in forward] == [question.id, second.id]


@pytest.mark.asyncio
async def test_parent_must_belong_to_same_thread(repository):
    one = await repository.create_thread()
    two = await repository.create_thread()
    foreign = await _add(repository, one.id, "elsewhere")

    with pytest.raises(InvalidParentError):
        await _add(repository, two.id, "child", parent=foreign)


@pytest.mark.asyncio
async def test_add_message_to_missing_thread_raises(repository):
    with pytest.raises(ThreadNotFoundError):
        await repository.add_message(Message(thread_id="nope", role=Role.HUMAN, content="hi"))


@pytest.mark.asyncio
async def test_thread_listing_and_most_recent(repository):
    assert await repository.get_most_recent_thread() is None

    first = await repository.create_thread(summary="first")
    second = await repository.create_thread(summary="second")

    threads = await repository.list_threads(limit=10)
    assert [t.id for t in threads] == [second.id, first.id]
    assert [t.id for t in await repository.list_threads(limit=1)] == [second.id]
    assert (await repository.get_most_recent_thread()).id == second.id


@pytest.mark.asyncio
async def test_find_thread_and_message_by_prefix(repository):
    thread = await repository.create_thread()
    message = await _add(repository, thread.id, "hello")

    assert (await repository.find_thread_by_prefix(thread.id[:8].upper())).id == thread.id
    assert (await repository.find_message_by_prefix(thread.id, message.id[:6])).id == message.id

    with pytest.raises(ThreadNotFoundError):
        await repository.find_thread_by_prefix("zzzz")
    with pytest.raises(MessageNotFoundError):
        await repository.find_message_by_prefix(thread.id, "zzzz")


@pytest.mark.asyncio
async def test_ambiguous_prefix_is_rejected(repository):
    thread = await repository.create_thread()
    await repository.add_message(Message(id="abc-1", thread_id=thread.id, role=Role.HUMAN, content="1"))
    await repository.add_message(Message(id="abc-2", thread_id=thread.id, role=Role.HUMAN, content="2"))

    with pytest.raises(AmbiguousPrefixError):
        await repository.find_message_by_prefix(thread.id, "abc")
    assert (await repository.find_message_by_prefix(thread.id, "abc-2")).content == "2"


@pytest.mark.asyncio
async def test_delete_last_messages_removes_newest(repository):
    thread = await repository.create_thread()
    first = await _add(repository, thread.id, "one")
    second = await _add(repository, thread.id, "two", parent=first)
    await _add(repository, thread.id, "three", parent=second)

    assert await repository.delete_last_messages(thread.id, 2) == 2
    remaining = await repository.get_messages(thread.id)
    assert [m.content for m in remaining] == ["one"]

    assert await repository.delete_last_messages(thread.id, 0) == 0
    assert await repository.delete_last_messages(thread.id, 5) == 1
    assert await repository.get_messages(thread.id) == []


@pytest.mark.asyncio
async def test_set_thread_summary(repository):
    thread = await repository.create_thread()
    await repository.set_thread_summary(thread.id, "Trip planning")
    assert (await repository.get_thread(thread.id)).summary == "Trip planning"

    with pytest.raises(ThreadNotFoundError):
        await repository.set_thread_summary("missing", "x")


@pytest.mark.asyncio
async def test_delete_thread_removes_messages(repository):
    thread = await repository.create_thread()
    message = await _add(repository, thread.id, "bye")

    assert await repository.delete_thread(thread.id) is True
    assert await repository.delete_thread(thread.id) is False
    with pytest.raises(MessageNotFoundError):
        await repository.get_message(message.id)


@pytest.mark.asyncio
async def test_concurrent_writes_share_one_connection(repository):
    threads = await asyncio.gather(*(repository.create_thread(summary=str(i)) for i in range(5)))

    stamps = [thread.created_at for thread in threads]
    assert len(set(stamps)) == 5
    listed = await repository.list_threads(limit=0)
    assert {t.id for t in listed} == {t.id for t in threads}
    assert [t.created_at for t in listed] == sorted(stamps, reverse=True)

    target = threads[0]
    await asyncio.gather(
        repository.set_thread_summary(target.id, "renamed"),
        _add(repository, target.id, "hello"),
        repository.create_thread(),
    )
    assert (await repository.get_thread(target.id)).summary == "renamed"
    assert [m.content for m in await repository.get_messages(target.id)] == ["hello"]
