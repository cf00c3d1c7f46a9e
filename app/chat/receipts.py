"""
Read receipts and unread counters.

Counters live on the conversation row, one per party. They are only ever
changed by the `mark_conversation_read` procedure, or, when that procedure
is not deployed, re-derived from a fresh count of unread messages. They are
never decremented locally.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from app.core.backend import BackendClient, Filter
from app.chat.broadcast import UnreadBroadcast, UnreadRefresh
from app.chat.errors import AuthRequired, ProcedureMissing
from app.chat.schemas import Role, Session


logger = logging.getLogger(__name__)

MARK_READ_PROCEDURE = "mark_conversation_read"
UNREAD_TOTAL_PROCEDURE = "unread_total"


def require_session(session: Optional[Session]) -> Session:
    if session is None or not session.user_id or not session.access_token:
        raise AuthRequired()
    return session


def _as_int(value) -> int:
    if isinstance(value, list):
        value = value[0] if value else 0
    if isinstance(value, dict):
        value = next(iter(value.values()), 0)
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


class ReadReceipts:

    def __init__(self, backend: BackendClient, broadcast: Optional[UnreadBroadcast] = None) -> None:
        self._backend = backend
        self._broadcast = broadcast

    async def mark_read(self, session: Optional[Session], conversation_id: str, role: Role) -> int:
        """
        Zero the caller's unread counter for `conversation_id`.

        Returns the caller's unread count after the call (0 unless messages
        arrived while the fallback was running). Idempotent.

        Raises:
            AuthRequired: no active session.
        """
        session = require_session(session)
        role = Role(role)

        try:
            await self._backend.call(MARK_READ_PROCEDURE, {"conversation_id": conversation_id})
            unread = 0
        except ProcedureMissing:
            logger.info(f"mark_read_fallback conversation_id={conversation_id} role={role.value}")
            unread = await self._mark_read_by_aggregation(session, conversation_id, role)

        logger.info(
            f"conversation_marked_read conversation_id={conversation_id} "
            f"user_id={session.user_id} role={role.value}"
        )
        self._notify(role, conversation_id)
        return unread

    async def _mark_read_by_aggregation(self, session: Session, conversation_id: str, role: Role) -> int:
        unread_filters = [
            Filter("conversation_id", "eq", conversation_id),
            Filter("recipient_id", "eq", session.user_id),
            Filter("read_at", "is", None),
        ]
        await self._backend.mutate(
            "messages", "update", {"read_at": datetime.now(timezone.utc).isoformat()}, filters=unread_filters
        )

        remaining = await self._backend.query("messages", select="id", filters=unread_filters)
        unread = max(0, len(remaining))

        await self._backend.mutate(
            "conversations",
            "update",
            {role.unread_field: unread},
            filters=[
                Filter("id", "eq", conversation_id),
                Filter(role.id_field, "eq", session.user_id),
            ],
        )
        return unread

    def _notify(self, role: Role, conversation_id: str) -> None:
        if self._broadcast is None:
            return
        try:
            self._broadcast.publish(UnreadRefresh(role=role, conversation_id=conversation_id))
        except Exception as e:
            logger.warning(f"unread_broadcast_failed conversation_id={conversation_id} error={e}")

    async def unread_total(self, session: Optional[Session], role: Role) -> int:
        """Sum of the caller's unread counters across all of their conversations."""
        session = require_session(session)
        role = Role(role)

        try:
            data = await self._backend.call(
                UNREAD_TOTAL_PROCEDURE, {"role": role.value, "account_id": session.user_id}
            )
            return _as_int(data)
        except ProcedureMissing:
            logger.info(f"unread_total_fallback user_id={session.user_id} role={role.value}")

        rows = await self._backend.query(
            "conversations",
            select="customer_unread_count, business_unread_count",
            filters=[Filter(role.id_field, "eq", session.user_id)],
        )
        return sum(_as_int(row.get(role.unread_field)) for row in rows)
