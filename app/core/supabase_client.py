import logging

from supabase import acreate_client, AsyncClient

from app.core.config import get_settings
from app.chat.errors import ServerError
from app.chat.schemas import Session


logger = logging.getLogger(__name__)


def _credentials() -> tuple[str, str]:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise ServerError("Supabase is not configured (PUBLIC_SUPABASE_URL / SECRET_API_KEY)")
    return settings.supabase_url, settings.supabase_key


async def create_session_client(session: Session) -> AsyncClient:
    """
    Client whose PostgREST calls run as the session user, so row level
    security and `auth.uid()` inside procedures see the caller.
    """
    url, key = _credentials()
    client = await acreate_client(url, key)
    client.postgrest.auth(session.access_token)
    logger.debug(f"supabase_client_created user_id={session.user_id}")
    return client
