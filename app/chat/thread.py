"""
Client-side state for one open conversation.

    idle -> loading -> ready | errored
    ready -> loading_older -> ready (older_error set on failure)
    any -> idle on close() or when a different conversation is opened

Every network step runs through a `RequestSlot`, so switching threads
cancels in-flight work and a late response for the previous thread is
dropped instead of overwriting the current one.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from app.core.backend import BackendClient
from app.core.config import get_settings
from app.chat.broadcast import UnreadBroadcast
from app.chat.directory import ConversationDirectory
from app.chat.errors import AuthRequired, ConversationNotFound, MessagingError, SendError
from app.chat.history import MessageList, merge_messages
from app.chat.lifecycle import (
    Aborted,
    BackgroundTasks,
    Failed,
    Ok,
    RequestSlot,
    Result,
    SingleFlight,
    error_kind,
    retry_once,
)
from app.chat.pagination import MessagePager, oldest_cursor
from app.chat.realtime import ThreadSubscription
from app.chat.receipts import ReadReceipts
from app.chat.schemas import Conversation, Message, Role, Session
from app.chat.service import ConversationService, resolve_recipient


logger = logging.getLogger(__name__)

# Shared across views so a duplicate open of the same thread reuses the in-flight load.
_thread_loads = SingleFlight(ttl=get_settings().request_memo_ttl_seconds)


class ViewState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOADING_OLDER = "loading_older"
    ERRORED = "errored"


class ConversationView:

    def __init__(
        self,
        session: Optional[Session],
        backend: BackendClient,
        *,
        broadcast: Optional[UnreadBroadcast] = None,
        directory: Optional[ConversationDirectory] = None,
        pager: Optional[MessagePager] = None,
        service: Optional[ConversationService] = None,
        receipts: Optional[ReadReceipts] = None,
        loads: Optional[SingleFlight] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.session = session
        self._directory = directory or ConversationDirectory(backend)
        self._pager = pager or MessagePager(backend, page_size=settings.message_page_size)
        self._service = service or ConversationService(backend)
        self._receipts = receipts or ReadReceipts(backend, broadcast)
        self._loads = loads if loads is not None else _thread_loads
        self._retry_delay = (
            settings.thread_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self._sleep = sleep

        self._slot = RequestSlot("thread")
        self._older_slot = RequestSlot("thread-older")
        self._receipt_tasks = BackgroundTasks("thread-receipts")
        self._subscription = ThreadSubscription(backend, BackgroundTasks("thread-realtime"))

        self.state = ViewState.IDLE
        self.conversation_id: Optional[str] = None
        self.conversation: Optional[Conversation] = None
        self.history = MessageList()
        self.has_more = False
        self.error: Optional[Failed] = None
        self.older_error: Optional[Failed] = None
        self.send_error: Optional[Failed] = None
        self.draft = ""

    # ------------------------------------------------------------------
    # read-only views of state
    # ------------------------------------------------------------------
    @property
    def messages(self) -> list[Message]:
        return self.history.items

    @property
    def viewer_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def role(self) -> Optional[Role]:
        if self.conversation is None or self.viewer_id is None:
            return None
        return self.conversation.party_role(self.viewer_id)

    @property
    def subscribed(self) -> bool:
        return self._subscription.active

    # ------------------------------------------------------------------
    # open / reload
    # ------------------------------------------------------------------
    def _reset(self, conversation_id: Optional[str]) -> None:
        self._slot.invalidate()
        self._older_slot.invalidate()
        self.state = ViewState.IDLE
        self.conversation_id = conversation_id
        self.conversation = None
        self.history = MessageList()
        self.has_more = False
        self.error = None
        self.older_error = None
        self.send_error = None

    async def _teardown(self) -> None:
        await self._receipt_tasks.cancel_all()
        await self._subscription.close()

    async def _load_thread(self, conversation_id: str) -> tuple[Conversation, list[Message]]:
        conversation = await self._directory.fetch_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        page = await self._pager.fetch_page(conversation_id)
        return conversation, page

    async def open(self, conversation_id: str) -> Result:
        """
        Attach realtime for `conversation_id`, load its newest page, then mark it read.

        Opening a different conversation cancels whatever the previous one had
        in flight. Returns the tagged outcome; `Aborted` means a newer open
        took over and nothing was committed.
        """
        if self.session is None:
            failure = Failed(AuthRequired.kind, AuthRequired())
            self._reset(conversation_id)
            self.state = ViewState.ERRORED
            self.error = failure
            return failure

        if conversation_id != self.conversation_id:
            self._reset(conversation_id)
            await self._teardown()
            if self.conversation_id != conversation_id:
                return Aborted(reason="superseded")

        self.state = ViewState.LOADING
        self.error = None

        # Subscribe before fetching so nothing inserted during the fetch is missed.
        await self._attach(conversation_id)
        if self.conversation_id != conversation_id:
            return Aborted(reason="superseded")

        async def load():
            return await retry_once(
                lambda: self._load_thread(conversation_id),
                delay=self._retry_delay,
                label=f"thread:{conversation_id}",
                sleep=self._sleep,
            )

        result = await self._slot.run(
            lambda: self._loads.do(f"thread:{self.viewer_id}:{conversation_id}", load),
            label=f"thread:{conversation_id}",
        )

        if isinstance(result, Aborted):
            return result
        if not self._slot.is_current(result.request_id) or self.conversation_id != conversation_id:
            return Aborted(result.request_id, reason="superseded")

        if isinstance(result, Failed):
            logger.error(
                f"conversation_load_failed conversation_id={conversation_id} kind={result.kind}"
            )
            self.state = ViewState.ERRORED
            self.error = result
            await self._subscription.close()
            return result

        conversation, page = result.value
        self._commit_initial(conversation, page)
        logger.info(
            f"conversation_opened conversation_id={conversation_id} messages={len(page)} has_more={self.has_more}"
        )
        self._receipt_tasks.spawn(
            self._mark_read(conversation_id), label=f"open:{conversation_id}"
        )
        return result

    async def _attach(self, conversation_id: str) -> None:
        try:
            await self._subscription.attach(
                conversation_id,
                self.viewer_id,
                self.history,
                on_inbound=lambda message: self._mark_read(conversation_id),
            )
        except MessagingError as e:
            # history stays usable without live updates
            logger.warning(f"thread_subscription_failed conversation_id={conversation_id} error={e}")

    def _commit_initial(self, conversation: Conversation, page: list[Message]) -> None:
        # Keep anything the live stream delivered that is newer than this page.
        newest = page[-1].created_at if page else None
        live = [
            m for m in self.history.items
            if newest is None or m.created_at > newest
        ]
        self.conversation = conversation
        self.history.replace(merge_messages(page, live))
        self.has_more = self._pager.has_more(page)
        self.state = ViewState.READY
        self.error = None

    async def _mark_read(self, conversation_id: str) -> None:
        role = self.role
        if role is None or conversation_id != self.conversation_id:
            return
        await self._receipts.mark_read(self.session, conversation_id, role)

    # ------------------------------------------------------------------
    # older pages
    # ------------------------------------------------------------------
    async def load_older(self) -> Optional[Result]:
        """
        Prepend the next older page. No-op (returns None) unless the view is
        ready, more history may exist and at least one message is held.
        Never retried; a failure keeps current messages and sets `older_error`.
        """
        if self.state is not ViewState.READY or not self.has_more:
            return None
        cursor = oldest_cursor(self.history.items)
        if cursor is None:
            return None

        conversation_id = self.conversation_id
        self.state = ViewState.LOADING_OLDER
        self.older_error = None

        result = await self._older_slot.run(
            lambda: self._pager.fetch_page(conversation_id, before=cursor),
            label=f"thread-older:{conversation_id}",
        )
        if self.conversation_id != conversation_id:
            return Aborted(result.request_id, reason="superseded")

        if self.state is ViewState.LOADING_OLDER:
            self.state = ViewState.READY
        if isinstance(result, Aborted):
            return result
        if isinstance(result, Failed):
            logger.warning(
                f"older_messages_failed conversation_id={conversation_id} kind={result.kind}"
            )
            self.older_error = result
            return result

        older = result.value
        self.history.merge(older)
        self.has_more = self._pager.has_more(older)
        return result

    # ------------------------------------------------------------------
    # send
    # ------------------------------------------------------------------
    async def send(self, body: str) -> Result:
        """Send `body`. On failure the text stays in `draft` and `send_error` is set."""
        self.draft = body
        self.send_error = None
        conversation = self.conversation
        if conversation is None or self.state not in (ViewState.READY, ViewState.LOADING_OLDER):
            failure = Failed(SendError.kind, SendError("Conversation unavailable."))
            self.send_error = failure
            return failure

        try:
            recipient_id = resolve_recipient(conversation, self.viewer_id)
            message = await self._service.send_message(
                self.session, conversation.id, recipient_id, body
            )
        except MessagingError as e:
            logger.error(f"message_send_failed conversation_id={conversation.id} error={e}")
            failure = Failed(error_kind(e), e)
            if self.conversation_id == conversation.id:
                self.send_error = failure
            return failure

        if self.conversation_id != conversation.id:
            return Aborted(reason="superseded")

        self.history.merge([message])
        self.draft = ""
        return Ok(message)

    # ------------------------------------------------------------------
    # close
    # ------------------------------------------------------------------
    async def close(self) -> None:
        """Cancel everything for the current conversation and return to idle."""
        if self.conversation_id is not None:
            logger.info(f"conversation_closed conversation_id={self.conversation_id}")
        self._reset(None)
        await self._teardown()
