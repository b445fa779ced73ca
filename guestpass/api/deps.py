from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from guestpass.core.config import get_settings
from guestpass.core.security import decode_token
from guestpass.db.models import User
from guestpass.db.session import get_db
from guestpass.services.override_service import (
    AuthenticatedRequester,
    RequesterIdentity,
    Unauthenticated,
    kiosk_degraded_mode,
)

bearer_scheme = HTTPBearer(auto_error=False)
settings = get_settings()


def _user_from_token(token: str, db: Session) -> User:
    try:
        payload = decode_token(token)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")

    user = db.query(User).filter(User.id == payload.get("sub")).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    return _user_from_token(credentials.credentials, db)


def get_optional_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User | None:
    # A presented token must still be valid; only its absence is tolerated.
    if not credentials:
        return None
    return _user_from_token(credentials.credentials, db)


def resolve_requester(user: User | None = Depends(get_optional_user)) -> RequesterIdentity:
    if user is not None:
        return AuthenticatedRequester(user_id=user.id, role=user.role.value)
    if settings.KIOSK_DEGRADED_MODE:
        return kiosk_degraded_mode()
    return Unauthenticated()


def require_roles(*roles: str):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role.value not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency
