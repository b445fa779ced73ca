import logging

from sqlalchemy.orm import Session

from guestpass.core.exceptions import AppException
from guestpass.core.security import (
    create_access_token,
    create_refresh_token,
    hash_password,
    verify_password,
)
from guestpass.core.timezone import utcnow
from guestpass.db.models import DeviceSession, User, UserRole
from guestpass.schemas.auth import AuthResponse

logger = logging.getLogger(__name__)


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "fullName": user.full_name,
        "email": user.email,
        "role": user.role.value,
    }


def _issue_auth_tokens(
    db: Session,
    user: User,
    user_agent: str = "",
    ip_address: str = "",
    device_label: str = "",
) -> AuthResponse:
    access_token = create_access_token(user.id, user.role.value)
    refresh_token = create_refresh_token(user.id)

    db.add(
        DeviceSession(
            user_id=user.id,
            refresh_token=refresh_token,
            device_label=device_label,
            user_agent=user_agent,
            ip_address=ip_address,
        )
    )
    db.commit()

    return AuthResponse(accessToken=access_token, refreshToken=refresh_token, user=user_payload(user))


def create_user(db: Session, full_name: str, email: str, password: str, role: str) -> User:
    email = email.strip().lower()
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise AppException("Email already exists", status_code=409)

    try:
        user_role = UserRole(role)
    except ValueError as exc:
        raise AppException("Invalid role", status_code=400) from exc

    user = User(full_name=full_name, email=email, password_hash=hash_password(password), role=user_role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def login(
    db: Session,
    email: str,
    password: str,
    user_agent: str = "",
    ip_address: str = "",
    device_label: str = "",
) -> AuthResponse:
    login_key = (email or "").strip().lower()
    user = db.query(User).filter(User.email == login_key).first()
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        logger.info("auth.login rejected email=%s ip=%s", login_key, ip_address)
        raise AppException("Invalid credentials", status_code=401)
    logger.info("auth.login user_id=%s role=%s device=%s", user.id, user.role.value, device_label or "-")
    return _issue_auth_tokens(
        db=db,
        user=user,
        user_agent=user_agent,
        ip_address=ip_address,
        device_label=device_label,
    )


def rotate_refresh_token(db: Session, refresh_token: str):
    session = (
        db.query(DeviceSession)
        .filter(DeviceSession.refresh_token == refresh_token, DeviceSession.revoked_at.is_(None))
        .first()
    )
    if not session or not session.user.is_active:
        raise AppException("Invalid refresh token", status_code=401)

    access_token = create_access_token(session.user_id, session.user.role.value)
    new_refresh = create_refresh_token(session.user_id)
    session.revoked_at = utcnow()
    db.add(
        DeviceSession(
            user_id=session.user_id,
            refresh_token=new_refresh,
            device_label=session.device_label,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
        )
    )
    db.commit()
    return {"accessToken": access_token, "refreshToken": new_refresh}


def logout(db: Session, refresh_token: str):
    session = db.query(DeviceSession).filter(DeviceSession.refresh_token == refresh_token).first()
    if session:
        session.revoked_at = utcnow()
        db.commit()
