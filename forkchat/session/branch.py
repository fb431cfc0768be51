"""Branch reconstruction over a thread's message tree.

Every message has at most one parent, so the messages of a thread form a
forest. A *branch* is the linear context ending at a chosen head: the
chain of ancestors back to a root, optionally extended forward by always
following the most recent child until a leaf is reached.

Recency (``created_at``) is the only ordering signal. Ties are broken by
message ID so results are deterministic.
"""

from collections import defaultdict
from typing import Iterable

from forkchat.exceptions import MessageNotFoundError
from forkchat.session.models import Message


def _recency_key(message: Message) -> tuple:
    return (message.created_at, message.id)


def latest_message(messages: Iterable[Message]) -> Message | None:
    """Return the most recently created message, or ``None`` if empty."""
    return max(messages, key=_recency_key, default=None)


def reconstruct_branch(
    messages: list[Message],
    head_id: str | None = None,
    extend_forward: bool = False,
) -> list[Message]:
    """Return the branch through ``head_id`` sorted by creation time.

    Args:
        messages: All messages of one thread
        head_id: Branch head; defaults to the most recent message
        extend_forward: Follow the newest child from the head down to a leaf

    Returns:
        Ordered messages of the branch (empty for an empty thread)

    Raises:
        MessageNotFoundError if ``head_id`` is not in ``messages``
    """
    by_id = {message.id: message for message in messages}

    if head_id is None:
        head = latest_message(messages)
        if head is None:
            return []
    else:
        head = by_id.get(head_id)
        if head is None:
            raise MessageNotFoundError(head_id)

    branch: dict[str, Message] = {}

    current: Message | None = head
    while current is not None and current.id not in branch:
        branch[current.id] = current
        current = by_id.get(current.parent_id) if current.parent_id else None

    if extend_forward:
        children: dict[str, list[Message]] = defaultdict(list)
        for message in messages:
            if message.parent_id:
                children[message.parent_id].append(message)

        current = head
        while children.get(current.id):
            current = max(children[current.id], key=_recency_key)
            if current.id in branch:
                break
            branch[current.id] = current

    return sorted(branch.values(), key=_recency_key)
