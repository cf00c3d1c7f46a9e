import logging
from datetime import datetime
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from app.core.backend import SupabaseBackend
from app.core.config import get_settings
from app.core.dependencies import get_session
from app.core.supabase_client import create_session_client
from app.chat.directory import ConversationDirectory
from app.chat.errors import MessagingError
from app.chat.pagination import MessagePager
from app.chat.receipts import ReadReceipts
from app.chat.service import ConversationService
from app.chat.schemas import (
    Conversation,
    CreateDirectConversationModel,
    CreateDirectConversationResponseModel,
    GetConversationResponseModel,
    GetConversationsResponseModel,
    GetMessagesResponseModel,
    MarkReadResponseModel,
    Role,
    SendMessageModel,
    SendMessageResponseModel,
    Session,
    UnreadTotalResponseModel,
)


logger = logging.getLogger(__name__)
router = APIRouter()

NO_STORE = "no-store"


async def get_backend(session: Session = Depends(get_session)) -> AsyncIterator[SupabaseBackend]:
    try:
        client = await create_session_client(session)
    except MessagingError as e:
        logger.error(f"supabase_client_unavailable error={e}")
        raise HTTPException(status_code=503, detail="Messaging backend unavailable")
    backend = SupabaseBackend(client, timeout=get_settings().request_timeout_seconds)
    try:
        yield backend
    finally:
        await backend.aclose()


def _http_error(error: MessagingError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


def _resolve_role(role: Optional[Role], session: Session) -> Role:
    return role or session.role or Role.CUSTOMER


async def _require_party(
    directory: ConversationDirectory, conversation_id: str, session: Session
) -> Conversation:
    conversation = await directory.fetch_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if conversation.party_role(session.user_id) is None:
        raise HTTPException(status_code=403, detail="You are not a member of this conversation")
    return conversation


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
async def list_conversations(
    response: Response,
    role: Optional[Role] = Query(default=None),
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Retrieve the inbox for the authenticated account.

    Conversations where the caller is the `role` party, newest activity first,
    each with the counterpart's display name and avatar and the caller's
    unread count.

    **Query Parameters**
    - `role`: `customer` or `business` (defaults to the role on the token)

    **Errors**
    - 401: Invalid or expired JWT
    - 502: Conversations could not be loaded (retryable)
    """
    directory = ConversationDirectory(
        backend, page_size=get_settings().conversation_page_size
    )
    try:
        conversations = await directory.list_conversations(
            session.user_id, _resolve_role(role, session)
        )
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to fetch conversations")
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")

    response.headers["Cache-Control"] = NO_STORE
    return {"conversations": conversations}


@router.get(
    "/conversations/{conversation_id}",
    response_model=GetConversationResponseModel,
    status_code=200,
)
async def get_conversation(
    conversation_id: str,
    response: Response,
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Retrieve a single conversation as seen by the caller.

    **Errors**
    - 401: Unauthorized
    - 403: Caller is not a party to the conversation
    - 404: Conversation not found
    """
    directory = ConversationDirectory(backend)
    try:
        found = await directory.get_conversation(conversation_id, session.user_id)
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to fetch conversation")
        raise HTTPException(status_code=500, detail="Failed to fetch conversation")

    if found is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    _, summary = found
    if summary is None:
        raise HTTPException(status_code=403, detail="You are not a member of this conversation")

    response.headers["Cache-Control"] = NO_STORE
    return {"conversation": summary}


@router.get(
    "/messages",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
async def get_messages(
    response: Response,
    conversation_id: str = Query(...),
    before: Optional[datetime] = Query(default=None, description="ISO-8601 cursor"),
    limit: Optional[int] = Query(default=None, ge=1),
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Retrieve one page of a conversation's messages in chronological order.

    Without `before` the newest page is returned; with `before` the page of
    messages strictly older than that timestamp. `has_more` is true when the
    page is full.

    **Errors**
    - 401: Unauthorized
    - 403: Caller is not a party to the conversation
    - 404: Conversation not found
    - 502 / 504: Messages could not be loaded
    """
    settings = get_settings()
    directory = ConversationDirectory(backend)
    pager = MessagePager(backend, page_size=settings.message_page_size)
    try:
        await _require_party(directory, conversation_id, session)
        messages = await pager.fetch_page(conversation_id, before=before, limit=limit)
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to retrieve messages")
        raise HTTPException(status_code=500, detail="Failed to retrieve messages")

    response.headers["Cache-Control"] = NO_STORE
    return {"messages": messages, "has_more": len(messages) == min(limit or pager.page_size, pager.page_size)}


@router.post(
    "/messages",
    response_model=SendMessageResponseModel,
    status_code=201,
)
async def send_message(
    data: SendMessageModel,
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Send a message to an existing conversation.

    **Input**
    - `conversation_id`: the conversation
    - `recipient_id`: the other party of that conversation
    - `body`: non-empty message text

    **Returns**
    - The persisted message with its server-assigned `id` and `created_at`

    **Errors**
    - 400: Empty body or recipient is not the other party
    - 401: Unauthorized
    - 403: Caller is not a party to the conversation
    """
    directory = ConversationDirectory(backend)
    service = ConversationService(backend)
    try:
        conversation = await _require_party(directory, data.conversation_id, session)
        if conversation.counterpart_id(session.user_id) != data.recipient_id:
            raise HTTPException(status_code=400, detail="Message recipient unavailable")
        message = await service.send_message(
            session, data.conversation_id, data.recipient_id, data.body
        )
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to send message")
        raise HTTPException(status_code=500, detail="Failed to send message")

    return {"message": message}


@router.post(
    "/conversations/direct",
    response_model=CreateDirectConversationResponseModel,
    status_code=200,
)
async def get_or_create_direct_conversation(
    data: CreateDirectConversationModel,
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Get or create the conversation between a customer and a business.

    Used when a customer clicks "Message" on a listing. Repeated or
    concurrent calls for the same pair return the same conversation.

    **Errors**
    - 400: Missing or identical parties
    - 401: Unauthorized
    - 403: Caller is neither party
    """
    if session.user_id not in (data.customer_id, data.business_id):
        raise HTTPException(status_code=403, detail="You can only open your own conversations")

    service = ConversationService(backend)
    try:
        conversation_id = await service.get_or_create_conversation(
            data.customer_id, data.business_id
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to open conversation")
        raise HTTPException(status_code=500, detail="Failed to open conversation")

    return {"conversation_id": conversation_id}


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=MarkReadResponseModel,
    status_code=200,
)
async def mark_conversation_read(
    conversation_id: str,
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Mark every message addressed to the caller in this conversation as read
    and zero the caller's unread counter. Safe to call repeatedly.

    **Errors**
    - 401: Unauthorized
    - 403: Caller is not a party to the conversation
    - 404: Conversation not found
    """
    directory = ConversationDirectory(backend)
    receipts = ReadReceipts(backend)
    try:
        conversation = await _require_party(directory, conversation_id, session)
        unread = await receipts.mark_read(
            session, conversation_id, conversation.party_role(session.user_id)
        )
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to mark conversation as read")
        raise HTTPException(status_code=500, detail="Failed to mark conversation as read")

    return {"conversation_id": conversation_id, "unread_count": unread}


@router.get(
    "/unread-total",
    response_model=UnreadTotalResponseModel,
    status_code=200,
)
async def get_unread_total(
    response: Response,
    role: Optional[Role] = Query(default=None),
    session: Session = Depends(get_session),
    backend: SupabaseBackend = Depends(get_backend),
):
    """
    Total unread messages for the caller across all conversations, used for
    the inbox badge.
    """
    role = _resolve_role(role, session)
    receipts = ReadReceipts(backend)
    try:
        total = await receipts.unread_total(session, role)
    except HTTPException:
        raise
    except MessagingError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Failed to fetch unread total")
        raise HTTPException(status_code=500, detail="Failed to fetch unread total")

    response.headers["Cache-Control"] = NO_STORE
    return {"role": role, "unread_total": total}
