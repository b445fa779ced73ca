"""Admission eligibility checks.

Each check is a pure function over an ``EligibilityContext`` snapshot and
returns a ``Denial`` or ``None``. ``evaluate_eligibility`` runs them in a
fixed order and stops at the first denial. ``load_eligibility_context``
is the only part that touches the database; it reads the policy fresh on
every call.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum

from sqlalchemy import func
from sqlalchemy.orm import Session

from guestpass.core.config import get_settings
from guestpass.core.timezone import (
    calculate_next_eligible_date,
    is_after_cutoff,
    nightly_cutoff,
    rolling_window_start,
    to_local,
)
from guestpass.db.models import Acceptance, Guest, Policy, Visit

settings = get_settings()


class DenialReason(str, Enum):
    BLACKLISTED = "blacklisted"
    CLOSED_FOR_NIGHT = "closed-for-night"
    CREDENTIAL_EXPIRED = "credential-expired"
    HOST_AT_CAPACITY = "host-at-capacity"
    GUEST_MONTHLY_LIMIT = "guest-monthly-limit"
    TERMS_REQUIRED = "terms-required"
    TERMS_RENEWAL_ELIGIBLE = "terms-renewal-eligible"
    SERVICE_UNAVAILABLE = "service-unavailable"


class DenialHint(str, Enum):
    OVERRIDE = "override"
    RESEND_TERMS = "resend-terms"
    CONTACT_SECURITY = "contact-security"
    REGENERATE_CREDENTIAL = "regenerate-credential"
    RETRY_LATER = "retry-later"
    NONE = "none"


@dataclass(frozen=True)
class Denial:
    reason: DenialReason
    message: str
    hint: DenialHint = DenialHint.NONE
    current_count: int | None = None
    max_count: int | None = None
    next_eligible_date: datetime | None = None

    @property
    def overridable(self) -> bool:
        return self.reason == DenialReason.HOST_AT_CAPACITY

    @property
    def retryable(self) -> bool:
        return self.reason == DenialReason.SERVICE_UNAVAILABLE


@dataclass(frozen=True)
class EligibilityContext:
    now: datetime
    guest_blacklisted_at: datetime | None
    host_active_count: int
    host_concurrent_limit: int
    guest_monthly_limit: int
    # Most recent check-ins inside the rolling window, newest first, at most guest_monthly_limit of them.
    recent_checkins: tuple[datetime, ...] = ()
    latest_acceptance_at: datetime | None = None
    cutoff: time | None = None
    credential_expires_at: datetime | None = None
    acceptance_valid_days: int = 365


def check_blacklist(ctx: EligibilityContext) -> Denial | None:
    if ctx.guest_blacklisted_at is None:
        return None
    return Denial(
        reason=DenialReason.BLACKLISTED,
        message="Entry denied. Please contact building security.",
        hint=DenialHint.CONTACT_SECURITY,
    )


def check_time_cutoff(ctx: EligibilityContext) -> Denial | None:
    if not is_after_cutoff(ctx.now, ctx.cutoff):
        return None
    return Denial(
        reason=DenialReason.CLOSED_FOR_NIGHT,
        message=f"Entries are closed after {ctx.cutoff.strftime('%H:%M')}.",
        hint=DenialHint.RETRY_LATER,
    )


def check_credential(ctx: EligibilityContext) -> Denial | None:
    # Batch credentials carry no expiry and always pass.
    if ctx.credential_expires_at is None or not ctx.now > ctx.credential_expires_at:
        return None
    return Denial(
        reason=DenialReason.CREDENTIAL_EXPIRED,
        message="QR code has expired. Please regenerate.",
        hint=DenialHint.REGENERATE_CREDENTIAL,
    )


def check_host_capacity(ctx: EligibilityContext) -> Denial | None:
    if ctx.host_active_count < ctx.host_concurrent_limit:
        return None
    return Denial(
        reason=DenialReason.HOST_AT_CAPACITY,
        message=(
            f"Host has reached the concurrent guest limit "
            f"({ctx.host_active_count}/{ctx.host_concurrent_limit})."
        ),
        hint=DenialHint.OVERRIDE,
        current_count=ctx.host_active_count,
        max_count=ctx.host_concurrent_limit,
    )


def check_guest_rolling_limit(ctx: EligibilityContext) -> Denial | None:
    limit = ctx.guest_monthly_limit
    window_start = rolling_window_start(ctx.now)
    in_window = sorted((at for at in ctx.recent_checkins if at >= window_start), reverse=True)
    if len(in_window) < limit:
        return None
    oldest_limiting = in_window[limit - 1]
    next_eligible = calculate_next_eligible_date(oldest_limiting)
    return Denial(
        reason=DenialReason.GUEST_MONTHLY_LIMIT,
        message=(
            f"Guest reached {limit} visits in the last 30 days. "
            f"Next eligible on {to_local(next_eligible).date().isoformat()}."
        ),
        current_count=len(in_window),
        max_count=limit,
        next_eligible_date=next_eligible,
    )


def check_terms_acceptance(ctx: EligibilityContext) -> Denial | None:
    if ctx.latest_acceptance_at is None:
        return Denial(
            reason=DenialReason.TERMS_REQUIRED,
            message="Guest must accept the Terms & Visitor Agreement before entry.",
            hint=DenialHint.RESEND_TERMS,
        )
    if ctx.latest_acceptance_at > ctx.now - timedelta(days=ctx.acceptance_valid_days):
        return None
    return Denial(
        reason=DenialReason.TERMS_RENEWAL_ELIGIBLE,
        message="Guest's terms acceptance is more than a year old and must be renewed.",
        hint=DenialHint.RESEND_TERMS,
    )


ELIGIBILITY_CHECKS = (
    check_blacklist,
    check_time_cutoff,
    check_credential,
    check_host_capacity,
    check_guest_rolling_limit,
    check_terms_acceptance,
)


def evaluate_eligibility(ctx: EligibilityContext, bypass_capacity: bool = False) -> Denial | None:
    """Run every check in order; ``bypass_capacity`` skips only the host capacity check."""
    for check in ELIGIBILITY_CHECKS:
        if bypass_capacity and check is check_host_capacity:
            continue
        denial = check(ctx)
        if denial is not None:
            return denial
    return None


def count_active_host_visits(db: Session, host_id: str, now: datetime) -> int:
    return (
        db.query(func.count(Visit.id))
        .filter(
            Visit.host_id == host_id,
            Visit.checked_in_at.is_not(None),
            Visit.expires_at > now,
            Visit.checked_out_at.is_(None),
        )
        .scalar()
    )


def recent_guest_checkins(db: Session, guest_id: str, now: datetime, limit: int) -> tuple[datetime, ...]:
    rows = (
        db.query(Visit.checked_in_at)
        .filter(
            Visit.guest_id == guest_id,
            Visit.checked_in_at.is_not(None),
            Visit.checked_in_at >= rolling_window_start(now),
        )
        .order_by(Visit.checked_in_at.desc())
        .limit(limit)
        .all()
    )
    return tuple(row[0] for row in rows)


def latest_acceptance_at(db: Session, guest_id: str) -> datetime | None:
    return db.query(func.max(Acceptance.accepted_at)).filter(Acceptance.guest_id == guest_id).scalar()


def has_valid_acceptance(db: Session, guest_id: str, now: datetime) -> bool:
    latest = latest_acceptance_at(db, guest_id)
    return latest is not None and latest > now - timedelta(days=settings.ACCEPTANCE_VALID_DAYS)


def load_eligibility_context(
    db: Session,
    guest: Guest,
    host_id: str,
    now: datetime,
    policy: Policy,
    credential_expires_at: datetime | None = None,
) -> EligibilityContext:
    return EligibilityContext(
        now=now,
        guest_blacklisted_at=guest.blacklisted_at,
        host_active_count=count_active_host_visits(db, host_id, now),
        host_concurrent_limit=policy.host_concurrent_limit,
        guest_monthly_limit=policy.guest_monthly_limit,
        recent_checkins=recent_guest_checkins(db, guest.id, now, policy.guest_monthly_limit),
        latest_acceptance_at=latest_acceptance_at(db, guest.id),
        cutoff=nightly_cutoff(),
        credential_expires_at=credential_expires_at,
        acceptance_valid_days=settings.ACCEPTANCE_VALID_DAYS,
    )


def guest_rolling_limit_denial(db: Session, guest_id: str, now: datetime, policy: Policy) -> Denial | None:
    """Rolling-limit check on its own, used when inviting or activating ahead of arrival."""
    ctx = EligibilityContext(
        now=now,
        guest_blacklisted_at=None,
        host_active_count=0,
        host_concurrent_limit=policy.host_concurrent_limit,
        guest_monthly_limit=policy.guest_monthly_limit,
        recent_checkins=recent_guest_checkins(db, guest_id, now, policy.guest_monthly_limit),
    )
    return check_guest_rolling_limit(ctx)
