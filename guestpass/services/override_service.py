"""Security override of the host capacity limit.

An override needs a reason, the shared override password and a requester
allowed to authorize it: an authenticated ``security`` or ``admin`` user,
or a supervised kiosk running in degraded mode. Degraded mode exists only
when ``KIOSK_DEGRADED_MODE`` is switched on.
"""
import logging
from dataclasses import dataclass
from typing import Union

from guestpass.core.config import get_settings
from guestpass.core.security import secrets_match

settings = get_settings()
logger = logging.getLogger(__name__)

REASON_MIN_LENGTH = 10
REASON_MAX_LENGTH = 500
OVERRIDE_ROLES = frozenset({"security", "admin"})

REASON_INVALID = "reason-invalid"
BAD_SECRET = "bad-secret"
INSUFFICIENT_ROLE = "insufficient-role"


@dataclass(frozen=True)
class AuthenticatedRequester:
    user_id: str
    role: str


@dataclass(frozen=True)
class KioskDegradedMode:
    operator_id: str


@dataclass(frozen=True)
class Unauthenticated:
    pass


RequesterIdentity = Union[AuthenticatedRequester, KioskDegradedMode, Unauthenticated]


def kiosk_degraded_mode() -> KioskDegradedMode:
    if not settings.KIOSK_DEGRADED_MODE:
        raise RuntimeError("Kiosk degraded mode is disabled")
    logger.warning("override.kiosk_degraded_mode requester constructed operator=%s", settings.KIOSK_OPERATOR_ID)
    return KioskDegradedMode(operator_id=settings.KIOSK_OPERATOR_ID)


def requester_actor_id(requester: RequesterIdentity) -> str | None:
    if isinstance(requester, AuthenticatedRequester):
        return requester.user_id
    if isinstance(requester, KioskDegradedMode):
        return requester.operator_id
    return None


@dataclass(frozen=True)
class OverrideAuthorized:
    reason: str
    authorized_by: str
    degraded_mode: bool = False


@dataclass(frozen=True)
class OverrideDenied:
    code: str
    message: str

    @property
    def status_code(self) -> int:
        if self.code == BAD_SECRET:
            return 401
        if self.code == INSUFFICIENT_ROLE:
            return 403
        return 400


OverrideDecision = Union[OverrideAuthorized, OverrideDenied]


def validate_reason(reason: str | None) -> OverrideDenied | None:
    cleaned = (reason or "").strip()
    if not cleaned:
        return OverrideDenied(REASON_INVALID, "Override reason is required")
    if len(cleaned) < REASON_MIN_LENGTH:
        return OverrideDenied(REASON_INVALID, f"Override reason must be at least {REASON_MIN_LENGTH} characters")
    if len(cleaned) > REASON_MAX_LENGTH:
        return OverrideDenied(REASON_INVALID, f"Override reason cannot exceed {REASON_MAX_LENGTH} characters")
    return None


def authorize_override(
    reason: str | None,
    secret: str | None,
    requester: RequesterIdentity,
) -> OverrideDecision:
    denied = validate_reason(reason)
    if denied:
        return denied

    if isinstance(requester, AuthenticatedRequester):
        if requester.role not in OVERRIDE_ROLES:
            return OverrideDenied(INSUFFICIENT_ROLE, "Only security staff or administrators can authorize an override")
        authorized_by = requester.user_id
        degraded = False
    elif isinstance(requester, KioskDegradedMode) and settings.KIOSK_DEGRADED_MODE:
        authorized_by = requester.operator_id
        degraded = True
    else:
        return OverrideDenied(INSUFFICIENT_ROLE, "Sign in as security staff to authorize an override")

    if not secrets_match(secret, settings.OVERRIDE_PASSWORD):
        return OverrideDenied(BAD_SECRET, "Incorrect override password")

    return OverrideAuthorized(reason=reason.strip(), authorized_by=authorized_by, degraded_mode=degraded)
