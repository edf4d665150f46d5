from dataclasses import dataclass

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.errors import AuthenticationError, AuthorizationError, ErrorCodes
from app.core.security import decode_access_token, secrets_match

security = HTTPBearer(auto_error=False)


def _user_id_from(credentials: HTTPAuthorizationCredentials | None) -> int | None:
    if not credentials:
        return None
    payload = decode_access_token(credentials.credentials)
    if not payload or "sub" not in payload:
        raise AuthenticationError("Invalid or expired token.", ErrorCodes.TOKEN_INVALID)
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token subject.", ErrorCodes.TOKEN_INVALID)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> int:
    user_id = _user_id_from(credentials)
    if user_id is None:
        raise AuthenticationError("Authentication required.", ErrorCodes.TOKEN_INVALID)
    return user_id


def require_admin(x_admin_secret: str | None = Header(None, alias="X-Admin-Secret")) -> None:
    """Admin API: X-Admin-Secret compared in constant time."""
    if not settings.admin_secret:
        raise AuthorizationError("Admin access is not configured.", ErrorCodes.INSUFFICIENT_PERMISSIONS)
    if not secrets_match(x_admin_secret, settings.admin_secret):
        raise AuthorizationError("Admin secret required.", ErrorCodes.INSUFFICIENT_PERMISSIONS)


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    is_admin: bool


def get_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_admin_secret: str | None = Header(None, alias="X-Admin-Secret"),
) -> Actor:
    """Buyer (bearer token) or admin (X-Admin-Secret); a wrong admin secret is rejected outright."""
    if x_admin_secret is not None:
        require_admin(x_admin_secret)
        return Actor(user_id=None, is_admin=True)
    return Actor(user_id=get_current_user_id(credentials), is_admin=False)
