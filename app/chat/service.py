import logging
from typing import Any, Optional

from app.core.backend import BackendClient, Filter
from app.chat.errors import Conflict, ProcedureMissing, SendError, ServerError
from app.chat.receipts import require_session
from app.chat.schemas import Conversation, Message, Session


logger = logging.getLogger(__name__)

GET_OR_CREATE_PROCEDURE = "get_or_create_conversation"


def resolve_recipient(conversation: Conversation, viewer_id: str) -> str:
    """The other party of `conversation`, as seen by `viewer_id`."""
    recipient_id = conversation.counterpart_id(viewer_id)
    if not recipient_id or recipient_id == viewer_id:
        raise SendError("Message recipient unavailable")
    return recipient_id


def _conversation_id(data: Any) -> Optional[str]:
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        data = data.get("id") or data.get(GET_OR_CREATE_PROCEDURE)
    return str(data) if data else None


class ConversationService:

    def __init__(self, backend: BackendClient) -> None:
        self._backend = backend

    async def get_or_create_conversation(self, customer_id: str, business_id: str) -> str:
        """
        Id of the single conversation between `customer_id` and `business_id`,
        creating it on first contact.

        Safe under concurrent calls for the same pair: the procedure and the
        upsert fallback both resolve on the (customer_id, business_id) unique key.
        """
        if not customer_id or not business_id:
            raise ValueError("Both customer_id and business_id are required")
        if customer_id == business_id:
            raise ValueError("A conversation needs two different parties")

        try:
            data = await self._backend.call(
                GET_OR_CREATE_PROCEDURE,
                {"customer_id": customer_id, "business_id": business_id},
            )
            conversation_id = _conversation_id(data)
            if conversation_id:
                return conversation_id
            logger.warning(
                f"get_or_create_empty customer_id={customer_id} business_id={business_id}"
            )
        except ProcedureMissing:
            logger.info(
                f"get_or_create_fallback customer_id={customer_id} business_id={business_id}"
            )

        return await self._upsert_conversation(customer_id, business_id)

    async def _upsert_conversation(self, customer_id: str, business_id: str) -> str:
        pair = {"customer_id": customer_id, "business_id": business_id}
        try:
            rows = await self._backend.mutate(
                "conversations", "upsert", pair, on_conflict="customer_id,business_id"
            )
        except Conflict:
            # lost the race to a concurrent creator; the row exists now
            rows = []

        conversation_id = _conversation_id(rows)
        if conversation_id:
            return conversation_id

        existing = await self._backend.query(
            "conversations",
            select="id",
            filters=[
                Filter("customer_id", "eq", customer_id),
                Filter("business_id", "eq", business_id),
            ],
            limit=1,
        )
        conversation_id = _conversation_id(existing)
        if not conversation_id:
            raise ServerError("Conversation could not be created")
        return conversation_id

    async def send_message(
        self,
        session: Optional[Session],
        conversation_id: str,
        recipient_id: str,
        body: str,
    ) -> Message:
        """
        Persist a message and return it with its server-assigned id and timestamp.

        Raises:
            AuthRequired: no active session.
            SendError: empty body or invalid recipient.
        """
        session = require_session(session)
        text = (body or "").strip()
        if not text:
            raise SendError("Message cannot be empty")
        if not recipient_id or recipient_id == session.user_id:
            raise SendError("Message recipient unavailable")

        rows = await self._backend.mutate(
            "messages",
            "insert",
            {
                "conversation_id": conversation_id,
                "sender_id": session.user_id,
                "recipient_id": recipient_id,
                "body": text,
            },
        )
        if not rows:
            raise ServerError("Message was not saved")

        message = Message.model_validate(rows[0])
        logger.info(
            f"message_sent conversation_id={conversation_id} message_id={message.id} "
            f"sender_id={session.user_id}"
        )
        return message
