import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from app.chat.schemas import Role


logger = logging.getLogger(__name__)

UNREAD_REFRESH_EVENT = "unread-refresh"


@dataclass(frozen=True)
class UnreadRefresh:
    role: Role
    conversation_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[UnreadRefresh], Any]


class UnreadBroadcast:
    """
    In-process pub/sub for the "unread counts changed" signal.

    Views that show unread badges subscribe; the read-receipt protocol
    publishes after every successful mark-read. Delivery is best effort:
    a failing listener is logged and never affects the publisher.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: UnreadRefresh) -> None:
        logger.debug(
            f"{UNREAD_REFRESH_EVENT} role={event.role.value} conversation_id={event.conversation_id}"
        )
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                logger.warning(f"unread_listener_failed error={e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._finish)

    def _finish(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"unread_listener_failed error={error}")

    async def drain(self) -> None:
        """Wait for async listeners scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
