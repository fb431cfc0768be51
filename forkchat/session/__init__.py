"""Conversation storage: threads and branching message trees in SQLite."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from forkchat.exceptions import (
    AmbiguousPrefixError,
    InvalidParentError,
    MessageNotFoundError,
    ThreadNotFoundError,
)
from forkchat.logging import get_logger
from forkchat.session.branch import reconstruct_branch
from forkchat.session.models import Message, Role, Thread, utcnow

log = get_logger(__name__)

_MESSAGE_COLUMNS = "id, thread_id, parent_id, role, content, tool_calls, model_name, provider, created_at"


def _to_db_time(value: datetime) -> str:
    # Fixed-width ISO text keeps lexicographic order equal to time order.
    return value.isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _row_to_message(row: Any) -> Message:
    return Message(
        id=row[0],
        thread_id=row[1],
        parent_id=row[2],
        role=Role(row[3]),
        content=row[4],
        tool_calls=Message.parse_tool_calls(row[5]),
        model_name=row[6],
        provider=row[7],
        created_at=_from_db_time(row[8]),
    )


def _row_to_thread(row: Any) -> Thread:
    return Thread(id=row[0], summary=row[1], created_at=_from_db_time(row[2]))


class MessageRepository(ABC):
    """Storage contract for threads and their message trees."""

    # Threads

    @abstractmethod
    async def create_thread(self, summary: str = "") -> Thread:
        pass

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Thread:
        pass

    @abstractmethod
    async def list_threads(self, limit: int = 10) -> list[Thread]:
        pass

    @abstractmethod
    async def get_most_recent_thread(self) -> Thread | None:
        pass

    @abstractmethod
    async def find_thread_by_prefix(self, prefix: str) -> Thread:
        pass

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> bool:
        pass

    @abstractmethod
    async def set_thread_summary(self, thread_id: str, summary: str) -> None:
        pass

    # Messages

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Message:
        pass

    @abstractmethod
    async def get_messages(
        self,
        thread_id: str,
        head_id: str | None = None,
        extend_forward: bool = False,
    ) -> list[Message]:
        pass

    @abstractmethod
    async def find_message_by_prefix(self, thread_id: str, prefix: str) -> Message:
        pass

    @abstractmethod
    async def delete_last_messages(self, thread_id: str, count: int) -> int:
        pass

    async def close(self) -> None:
        return None


class SQLiteMessageRepository(MessageRepository):
    """Message tree storage backed by SQLite."""

    def __init__(self, db_path: Path | str):
        """Initialize the repository.

        Args:
            db_path: SQLite database file (``":memory:"`` is accepted)
        """
        if str(db_path) == ":memory:":
            self.db_path: Path | str = ":memory:"
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        # Creation times handed out by this instance are strictly increasing.
        self._last_created: datetime | None = None

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    async def _conn(self) -> aiosqlite.Connection:
        """Return the connection, creating the schema on first use."""
        async with self._connect_lock:
            if self._db is None:
                self._db = await aiosqlite.connect(str(self.db_path))
                await self._db.execute("""
                    CREATE TABLE IF NOT EXISTS threads (
                        id TEXT PRIMARY KEY,
                        summary TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                """)
                await self._db.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        thread_id TEXT NOT NULL REFERENCES threads(id),
                        parent_id TEXT,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL DEFAULT '',
                        tool_calls TEXT NOT NULL DEFAULT '',
                        model_name TEXT NOT NULL DEFAULT '',
                        provider TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                """)
                await self._db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_thread_created ON messages(thread_id, created_at)"
                )
                await self._db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_threads_created ON threads(created_at DESC)"
                )
                await self._db.commit()
        return self._db

    # Threads

    async def create_thread(self, summary: str = "") -> Thread:
        """Create and persist a new thread."""
        db = await self._conn()
        async with self._write_lock:
            thread = Thread(id=str(uuid.uuid4()), summary=summary, created_at=self._next_timestamp())
            await db.execute(
                "INSERT INTO threads (id, summary, created_at) VALUES (?, ?, ?)",
                (thread.id, thread.summary, _to_db_time(thread.created_at)),
            )
            await db.commit()
        log.info("Created new thread", thread_id=thread.id)
        return thread

    async def get_thread(self, thread_id: str) -> Thread:
        db = await self._conn()
        async with db.execute(
            "SELECT id, summary, created_at FROM threads WHERE id = ?",
            (thread_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise ThreadNotFoundError(thread_id)
        return _row_to_thread(row)

    async def list_threads(self, limit: int = 10) -> list[Thread]:
        """List threads, newest first. ``limit <= 0`` returns all of them."""
        db = await self._conn()
        query = "SELECT id, summary, created_at FROM threads ORDER BY created_at DESC, id DESC"
        params: tuple[Any, ...] = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_thread(row) for row in rows]

    async def get_most_recent_thread(self) -> Thread | None:
        threads = await self.list_threads(limit=1)
        return threads[0] if threads else None

    async def find_thread_by_prefix(self, prefix: str) -> Thread:
        """Resolve a thread from a unique, case-insensitive ID prefix."""
        key = prefix.strip().lower()
        if not key:
            raise ThreadNotFoundError(prefix)

        db = await self._conn()
        async with db.execute(
            "SELECT id, summary, created_at FROM threads WHERE substr(lower(id), 1, ?) = ?",
            (len(key), key),
        ) as cursor:
            rows = await cursor.fetchall()

        if not rows:
            raise ThreadNotFoundError(prefix)
        if len(rows) > 1:
            raise AmbiguousPrefixError(prefix, len(rows))
        return _row_to_thread(rows[0])

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread and all of its messages."""
        db = await self._conn()
        async with self._write_lock:
            await db.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            cursor = await db.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
            await db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            log.info("Deleted thread", thread_id=thread_id)
        return deleted

    async def set_thread_summary(self, thread_id: str, summary: str) -> None:
        db = await self._conn()
        async with self._write_lock:
            cursor = await db.execute(
                "UPDATE threads SET summary = ? WHERE id = ?",
                (summary, thread_id),
            )
            await db.commit()
        if cursor.rowcount == 0:
            raise ThreadNotFoundError(thread_id)

    # Messages

    async def add_message(self, message: Message) -> Message:
        """Append a message to its thread, assigning identity and timestamp.

        The creation time is kept strictly later than the parent's so the
        parent graph can never contain a cycle.

        Raises:
            ThreadNotFoundError if the thread does not exist
            InvalidParentError if the parent belongs to another thread
        """
        db = await self._conn()
        async with self._write_lock:
            await self.get_thread(message.thread_id)

            created_at = self._next_timestamp()
            if message.parent_id is not None:
                try:
                    parent = await self.get_message(message.parent_id)
                except MessageNotFoundError as e:
                    raise InvalidParentError(f"Parent message not found: {message.parent_id}") from e
                if parent.thread_id != message.thread_id:
                    raise InvalidParentError(
                        f"Parent {parent.id} belongs to thread {parent.thread_id}, not {message.thread_id}"
                    )
                if created_at <= parent.created_at:
                    created_at = parent.created_at + timedelta(microseconds=1)

            self._last_created = created_at

            message_id = message.id or str(uuid.uuid4())
            await db.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message_id,
                    message.thread_id,
                    message.parent_id,
                    message.role.value,
                    message.content,
                    message.serialized_tool_calls(),
                    message.model_name,
                    message.provider,
                    _to_db_time(created_at),
                ),
            )
            await db.commit()

        message.id = message_id
        message.created_at = created_at
        log.debug(
            "Stored message",
            thread_id=message.thread_id,
            message_id=message.id,
            role=message.role.value,
        )
        return message

    async def get_message(self, message_id: str) -> Message:
        db = await self._conn()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise MessageNotFoundError(message_id)
        return _row_to_message(row)

    async def _thread_messages(self, thread_id: str) -> list[Message]:
        db = await self._conn()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id = ?",
            (thread_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def get_messages(
        self,
        thread_id: str,
        head_id: str | None = None,
        extend_forward: bool = False,
    ) -> list[Message]:
        """Return the branch of ``thread_id`` ending at ``head_id``.

        See :func:`forkchat.session.branch.reconstruct_branch`.
        """
        messages = await self._thread_messages(thread_id)
        return reconstruct_branch(messages, head_id=head_id, extend_forward=extend_forward)

    async def find_message_by_prefix(self, thread_id: str, prefix: str) -> Message:
        """Resolve a message of ``thread_id`` from a unique ID prefix."""
        key = prefix.strip().lower()
        if not key:
            raise MessageNotFoundError(prefix)

        db = await self._conn()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id = ? AND substr(lower(id), 1, ?) = ?",
            (thread_id, len(key), key),
        ) as cursor:
            rows = await cursor.fetchall()

        if not rows:
            raise MessageNotFoundError(prefix)
        if len(rows) > 1:
            raise AmbiguousPrefixError(prefix, len(rows))
        return _row_to_message(rows[0])

    async def delete_last_messages(self, thread_id: str, count: int) -> int:
        """Delete the ``count`` most recent messages of a thread.

        Children are always newer than their parents, so this never leaves
        a dangling parent reference.

        Returns:
            Number of deleted messages
        """
        if count <= 0:
            return 0
        db = await self._conn()
        async with self._write_lock:
            async with db.execute(
                "SELECT id FROM messages WHERE thread_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (thread_id, count),
            ) as cursor:
                ids = [row[0] for row in await cursor.fetchall()]
            if ids:
                placeholders = ", ".join("?" for _ in ids)
                await db.execute(f"DELETE FROM messages WHERE id IN ({placeholders})", ids)
                await db.commit()
        log.info("Deleted messages", thread_id=thread_id, count=len(ids))
        return len(ids)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


__all__ = [
    "Message",
    "MessageRepository",
    "Role",
    "SQLiteMessageRepository",
    "Thread",
    "reconstruct_branch",
]
