import logging
from typing import Iterable, Optional

from app.core.backend import BackendClient, Filter
from app.chat.errors import LoadError, MessagingError
from app.chat.schemas import Profile


logger = logging.getLogger(__name__)

PROFILE_COLUMNS = "id, full_name, business_name, profile_photo_url"
AVATAR_PLACEHOLDER = "/business-placeholder.png"


def display_name(profile: Optional[Profile]) -> str:
    if profile is None:
        return "Unknown"
    return profile.business_name or profile.full_name or "Unknown"


def avatar_url(profile: Optional[Profile]) -> str:
    if profile is None or not profile.profile_photo_url:
        return AVATAR_PLACEHOLDER
    return profile.profile_photo_url


class ProfileLookup:
    """Resolves many user/business ids to display profiles in a single query."""

    def __init__(self, backend: BackendClient, table: str = "users") -> None:
        self._backend = backend
        self._table = table

    async def fetch_profiles(self, ids: Iterable[Optional[str]]) -> dict[str, Profile]:
        unique_ids = sorted({str(i) for i in ids if i})
        if not unique_ids:
            return {}

        try:
            rows = await self._backend.query(
                self._table,
                select=PROFILE_COLUMNS,
                filters=[Filter("id", "in", unique_ids)],
            )
        except MessagingError as e:
            logger.error(f"profile_lookup_failed count={len(unique_ids)} error={e}")
            raise LoadError("Failed to load profiles", code=e.code) from e

        profiles = {}
        for row in rows:
            profile = Profile.model_validate(row)
            profiles[profile.id] = profile
        return profiles
