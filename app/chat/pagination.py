import logging
from datetime import datetime
from typing import Optional, Sequence, Union

from app.core.backend import BackendClient, Filter, Order
from app.chat.errors import LoadError, MessagingError
from app.chat.schemas import Message


logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = "id, conversation_id, sender_id, recipient_id, body, created_at, read_at"
MESSAGE_PAGE_SIZE = 50

Cursor = Union[str, datetime]


def format_cursor(cursor: Cursor) -> str:
    if isinstance(cursor, datetime):
        return cursor.isoformat()
    return cursor


def oldest_cursor(messages: Sequence[Message]) -> Optional[datetime]:
    """Timestamp of the oldest held message, or None when nothing is loaded."""
    if not messages:
        return None
    return messages[0].created_at


class MessagePager:
    """
    Stateless cursor pagination over one conversation's messages.

    Pages are fetched newest-first and reversed, so callers always receive
    ascending chronological order. The caller owns accumulated state.
    """

    def __init__(self, backend: BackendClient, page_size: int = MESSAGE_PAGE_SIZE) -> None:
        self._backend = backend
        self.page_size = page_size

    def has_more(self, page: Sequence[Message]) -> bool:
        # A full page means older messages may exist; a short one means we reached the start.
        return len(page) == self.page_size

    async def fetch_page(
        self,
        conversation_id: str,
        before: Optional[Cursor] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        limit = min(limit or self.page_size, self.page_size)
        filters = [Filter("conversation_id", "eq", conversation_id)]
        if before is not None:
            filters.append(Filter("created_at", "lt", format_cursor(before)))

        try:
            rows = await self._backend.query(
                "messages",
                select=MESSAGE_COLUMNS,
                filters=filters,
                order=[Order("created_at", desc=True)],
                limit=limit,
            )
        except MessagingError as e:
            logger.error(
                f"message_page_failed conversation_id={conversation_id} before={before} error={e}"
            )
            if isinstance(e, LoadError) or e.kind == "timeout":
                raise
            raise LoadError("Failed to load messages", code=e.code) from e

        page = [Message.model_validate(row) for row in rows]
        page.reverse()
        logger.debug(
            f"message_page_loaded conversation_id={conversation_id} before={before} count={len(page)}"
        )
        return page
