import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import get_settings
from app.chat.schemas import Role, Session


logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    settings = get_settings()
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="Auth is not configured")

    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=f"{settings.supabase_url}/auth/v1",
            options={"verify_aud": False},
            leeway=60,
        )

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.warning(f"jwt_verification_failed error={e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Session:
    """Turn the bearer token into the session handle the messaging core expects."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authentication required")

    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    metadata = payload.get("user_metadata") or {}
    role = metadata.get("role")
    return Session(
        user_id=str(user_id),
        access_token=credentials.credentials,
        role=Role(role) if role in {r.value for r in Role} else None,
    )
