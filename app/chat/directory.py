import logging
from datetime import datetime, timezone
from typing import Optional

from app.core.backend import BackendClient, Filter, Order
from app.chat.errors import LoadError, MessagingError
from app.chat.profiles import ProfileLookup, avatar_url, display_name
from app.chat.schemas import Conversation, ConversationSummary, Profile, Role


logger = logging.getLogger(__name__)

CONVERSATION_COLUMNS = (
    "id, customer_id, business_id, last_message_at, last_message_preview, "
    "customer_unread_count, business_unread_count"
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def summarize(
    conversation: Conversation, viewer_id: str, role: Role, profile: Optional[Profile]
) -> ConversationSummary:
    counterpart_id = conversation.counterpart_id(viewer_id) or ""
    return ConversationSummary(
        id=conversation.id,
        customer_id=conversation.customer_id,
        business_id=conversation.business_id,
        counterpart_id=counterpart_id,
        counterpart_name=display_name(profile),
        counterpart_avatar=avatar_url(profile),
        last_message_at=conversation.last_message_at,
        last_message_preview=conversation.last_message_preview,
        unread_count=conversation.unread_for(role),
    )


def _recency_key(conversation: Conversation):
    # Newest first; conversations without messages sink to the bottom.
    stamp = conversation.last_message_at
    if stamp is not None and stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return (stamp is not None, stamp or _EPOCH)


class ConversationDirectory:

    def __init__(
        self,
        backend: BackendClient,
        profiles: Optional[ProfileLookup] = None,
        page_size: int = 100,
    ) -> None:
        self._backend = backend
        self._profiles = profiles or ProfileLookup(backend)
        self._page_size = page_size

    async def list_conversations(self, account_id: str, role: Role) -> list[ConversationSummary]:
        """
        Conversations where `account_id` is the `role` party, newest activity
        first, each decorated with the counterpart's profile.

        Raises:
            LoadError: the conversation or profile query failed (retryable).
        """
        role = Role(role)
        try:
            rows = await self._backend.query(
                "conversations",
                select=CONVERSATION_COLUMNS,
                filters=[Filter(role.id_field, "eq", account_id)],
                order=[Order("last_message_at", desc=True, nulls_first=False)],
                limit=self._page_size,
            )
        except MessagingError as e:
            logger.error(f"conversation_list_failed account_id={account_id} role={role.value} error={e}")
            raise LoadError("Failed to load conversations", code=e.code) from e

        conversations = [Conversation.model_validate(row) for row in rows]
        conversations.sort(key=_recency_key, reverse=True)
        conversations = conversations[: self._page_size]

        profiles = await self._profiles.fetch_profiles(
            c.counterpart_id(account_id) for c in conversations
        )
        logger.info(
            f"conversation_list_loaded account_id={account_id} role={role.value} count={len(conversations)}"
        )
        return [
            summarize(c, account_id, role, profiles.get(c.counterpart_id(account_id) or ""))
            for c in conversations
        ]

    async def fetch_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            rows = await self._backend.query(
                "conversations",
                select=CONVERSATION_COLUMNS,
                filters=[Filter("id", "eq", conversation_id)],
                limit=1,
            )
        except MessagingError as e:
            logger.error(f"conversation_fetch_failed conversation_id={conversation_id} error={e}")
            raise LoadError("Failed to load conversation", code=e.code) from e
        if not rows:
            return None
        return Conversation.model_validate(rows[0])

    async def get_conversation(
        self, conversation_id: str, viewer_id: str
    ) -> Optional[tuple[Conversation, Optional[ConversationSummary]]]:
        """
        Single conversation plus its decorated summary as seen by `viewer_id`.
        The summary is None when the viewer is not a party to the conversation.
        """
        conversation = await self.fetch_conversation(conversation_id)
        if conversation is None:
            return None
        role = conversation.party_role(viewer_id)
        if role is None:
            return conversation, None

        counterpart = conversation.counterpart_id(viewer_id)
        profiles = await self._profiles.fetch_profiles([counterpart])
        return conversation, summarize(conversation, viewer_id, role, profiles.get(counterpart or ""))
