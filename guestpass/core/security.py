import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from guestpass.core.config import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
settings = get_settings()

CREDENTIAL_TOKEN_TYPE = "checkin"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def secrets_match(supplied: str | None, expected: str | None) -> bool:
    """Constant-time comparison. An unset expected secret never matches."""
    if not expected or supplied is None:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def _create_token(
    subject: str,
    expires_delta: timedelta,
    token_type: str,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(subject: str, role: str) -> str:
    return _create_token(
        subject=subject,
        expires_delta=timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        token_type="access",
        extra={"role": role},
    )


def create_refresh_token(subject: str) -> str:
    return _create_token(
        subject=subject,
        expires_delta=timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        token_type="refresh",
    )


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired token") from exc


def sign_credential(claims: Dict[str, Any]) -> str:
    payload = dict(claims)
    payload["type"] = CREDENTIAL_TOKEN_TYPE
    return jwt.encode(payload, settings.CREDENTIAL_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_credential_signature(token: str) -> Dict[str, Any]:
    """Verify a check-in credential's signature and return its claims.

    Expiry is not enforced here. Expired credentials are reported by the
    eligibility checks as ``credential-expired``.
    """
    try:
        claims = jwt.decode(
            token,
            settings.CREDENTIAL_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False, "verify_iat": False},
        )
    except JWTError as exc:
        raise ValueError("Invalid credential signature") from exc
    if claims.get("type") != CREDENTIAL_TOKEN_TYPE:
        raise ValueError("Not a check-in credential")
    return claims
