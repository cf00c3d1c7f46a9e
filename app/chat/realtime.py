import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from app.core.backend import BackendClient, EventFilter, Subscription
from app.chat.history import MessageList
from app.chat.lifecycle import BackgroundTasks
from app.chat.schemas import Message


logger = logging.getLogger(__name__)


def channel_name(conversation_id: str) -> str:
    return f"messages-{conversation_id}"


def insert_filter(conversation_id: str) -> EventFilter:
    return EventFilter(
        event="INSERT",
        table="messages",
        schema="public",
        filter=f"conversation_id=eq.{conversation_id}",
    )


class ThreadSubscription:
    """
    At most one live message subscription for a conversation view.

    Inserted rows are merged into the view's `MessageList` by id, so a
    message already present from the initial fetch (or delivered twice by
    the stream) is ignored. Messages addressed to the viewer trigger
    `on_inbound` as a best-effort background task.

    Every attach/close bumps a generation counter; events carrying an older
    generation are dropped, so a stale channel can never write into the
    history of the next conversation.
    """

    def __init__(self, backend: BackendClient, tasks: Optional[BackgroundTasks] = None) -> None:
        self._backend = backend
        self._tasks = tasks or BackgroundTasks("realtime")
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self.conversation_id: Optional[str] = None

    @property
    def active(self) -> bool:
        return self._subscription is not None

    async def attach(
        self,
        conversation_id: str,
        viewer_id: str,
        history: MessageList,
        *,
        on_inbound: Optional[Callable[[Message], Awaitable[Any]]] = None,
    ) -> bool:
        """Subscribe to inserts for `conversation_id`. Returns False if superseded meanwhile."""
        if self.active and self.conversation_id == conversation_id:
            return True

        await self.close()
        self._generation += 1
        generation = self._generation
        self.conversation_id = conversation_id

        def handle(row: dict) -> None:
            if generation != self._generation:
                logger.debug(f"realtime_event_stale conversation_id={conversation_id}")
                return
            if str(row.get("conversation_id")) != conversation_id:
                return
            try:
                message = Message.model_validate(row)
            except ValidationError as e:
                logger.warning(f"realtime_event_invalid conversation_id={conversation_id} error={e}")
                return

            if not history.merge([message]):
                return
            if message.recipient_id == viewer_id and on_inbound is not None:
                self._tasks.spawn(on_inbound(message), label=f"read-receipt:{conversation_id}")

        subscription = await self._backend.subscribe(
            channel_name(conversation_id), insert_filter(conversation_id), handle
        )
        if generation != self._generation:
            # closed or re-attached while the channel was joining
            await subscription.close()
            return False

        self._subscription = subscription
        logger.info(f"thread_subscription_attached conversation_id={conversation_id}")
        return True

    async def close(self) -> None:
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        conversation_id, self.conversation_id = self.conversation_id, None
        await self._tasks.cancel_all()
        if subscription is not None:
            await subscription.close()
            logger.info(f"thread_subscription_closed conversation_id={conversation_id}")
