from datetime import timezone
from typing import Iterable, Sequence

from app.chat.schemas import Message


def _sort_key(message: Message):
    stamp = message.created_at
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def merge_messages(existing: Sequence[Message], incoming: Iterable[Message]) -> list[Message]:
    """
    Union of two message sets keyed on `id`, in ascending `created_at` order.

    The first copy of an id wins; a later copy with different content is
    dropped rather than merged. Ties on `created_at` keep arrival order.
    """
    seen = {m.id for m in existing}
    merged = list(existing)
    for message in incoming:
        if message.id in seen:
            continue
        seen.add(message.id)
        merged.append(message)
    merged.sort(key=_sort_key)
    return merged


def contains(messages: Sequence[Message], message_id: str) -> bool:
    return any(m.id == message_id for m in messages)


class MessageList:
    """Ordered, id-unique message history owned by a single conversation view."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._items: list[Message] = merge_messages([], messages)

    @property
    def items(self) -> list[Message]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def __contains__(self, message_id: str) -> bool:
        return contains(self._items, message_id)

    def merge(self, incoming: Iterable[Message]) -> int:
        """Merge messages in, returning how many were new."""
        before = len(self._items)
        self._items = merge_messages(self._items, incoming)
        return len(self._items) - before

    def newest(self) -> Message | None:
        return self._items[-1] if self._items else None

    def replace(self, messages: Iterable[Message]) -> None:
        self._items = merge_messages([], messages)
