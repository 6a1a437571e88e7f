"""Authentication dependencies for users and the merge worker"""
import secrets

from fastapi import HTTPException, Request

from promoreel.core.config import settings
from promoreel.core.logging import security_logger
from promoreel.db.redis import get_session


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def verify_callback_secret(secret) -> bool:
    """Constant-time comparison of a merge callback secret

    An unset server secret rejects every callback.
    """
    expected = settings.MERGE_CALLBACK_SECRET
    if not expected or not isinstance(secret, str):
        return False
    return secrets.compare_digest(secret.encode("utf-8"), expected.encode("utf-8"))
