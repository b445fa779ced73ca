from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from guestpass.core.config import get_settings
from guestpass.core.exceptions import AppException
from guestpass.core.timezone import rolling_window_start, utcnow
from guestpass.db.models import Acceptance, Discount, Guest, Invitation, Visit
from guestpass.services.audit_service import write_audit_log
from guestpass.services.credential_service import normalize_email

settings = get_settings()

BLACKLIST_ACTIONS = {"blacklist", "unblacklist"}


def upsert_guest(db: Session, email: str, name: str | None, commit: bool = True) -> Guest:
    """Find a guest by email, creating it on first sight and refreshing the display name."""
    email = normalize_email(email)
    name = (name or "").strip()
    guest = db.query(Guest).filter(Guest.email == email).first()
    if not guest:
        guest = Guest(email=email, name=name or email.split("@")[0])
        db.add(guest)
    elif name and guest.name != name:
        guest.name = name
    if commit:
        db.commit()
        db.refresh(guest)
    else:
        db.flush()
    return guest


def record_acceptance(
    db: Session,
    guest: Guest,
    now: datetime | None = None,
    invitation_id: str | None = None,
    source: str = "guest",
) -> Acceptance:
    """Stage an acceptance of the current terms and agreement versions. The caller commits."""
    now = now or utcnow()
    row = Acceptance(
        guest_id=guest.id,
        invitation_id=invitation_id,
        accepted_at=now,
        terms_version=settings.TERMS_VERSION,
        agreement_version=settings.AGREEMENT_VERSION,
        source=source,
    )
    db.add(row)
    guest.terms_accepted_at = now
    db.flush()
    return row


def guest_payload(guest: Guest) -> dict:
    return {
        "id": guest.id,
        "email": guest.email,
        "name": guest.name,
        "isBlacklisted": guest.is_blacklisted,
        "blacklistedAt": guest.blacklisted_at.isoformat() if guest.blacklisted_at else None,
        "termsAcceptedAt": guest.terms_accepted_at.isoformat() if guest.terms_accepted_at else None,
    }


def set_blacklist(db: Session, guest_id: str, action: str, actor_user_id: str) -> tuple[Guest, str]:
    if action not in BLACKLIST_ACTIONS:
        raise AppException('Invalid action. Must be "blacklist" or "unblacklist"', status_code=400)

    guest = db.query(Guest).filter(Guest.id == guest_id).first()
    if not guest:
        raise AppException("Guest not found", status_code=404)

    if action == "blacklist":
        if guest.blacklisted_at:
            raise AppException("Guest is already blacklisted", status_code=400)
        guest.blacklisted_at = utcnow()
        message = f"{guest.name} has been blacklisted"
    else:
        if not guest.blacklisted_at:
            raise AppException("Guest is not blacklisted", status_code=400)
        guest.blacklisted_at = None
        message = f"{guest.name} has been removed from blacklist"

    write_audit_log(
        db,
        actor_user_id=actor_user_id,
        action=f"guest.{action}",
        resource_type="guest",
        resource_id=guest.id,
        meta={"email": guest.email},
        commit=False,
    )
    db.commit()
    db.refresh(guest)
    return guest, message


def guest_stats(db: Session, guest_id: str, now: datetime | None = None) -> dict:
    now = now or utcnow()
    completed = db.query(Visit).filter(Visit.guest_id == guest_id, Visit.checked_in_at.is_not(None))
    recent_visits = completed.filter(Visit.checked_in_at >= rolling_window_start(now)).count()
    lifetime_visits = completed.count()
    last_visit_at = (
        db.query(func.max(Visit.checked_in_at))
        .filter(Visit.guest_id == guest_id, Visit.checked_in_at.is_not(None))
        .scalar()
    )
    has_discount = db.query(Discount.id).filter(Discount.guest_id == guest_id).first() is not None
    return {
        "recentVisits": recent_visits,
        "lifetimeVisits": lifetime_visits,
        "lastVisitAt": last_visit_at.isoformat() if last_visit_at else None,
        "hasDiscount": has_discount,
    }


def search_guests(db: Session, q: str | None = None, limit: int = 100) -> list[dict]:
    query = db.query(Guest).order_by(Guest.created_at.desc())
    if q:
        term = f"%{q.strip().lower()}%"
        query = query.filter((Guest.email.ilike(term)) | (Guest.name.ilike(term)))
    now = utcnow()
    return [{**guest_payload(row), "stats": guest_stats(db, row.id, now)} for row in query.limit(limit).all()]


def host_guest_history(db: Session, host_id: str, q: str | None = None) -> list[dict]:
    """Guests this host has invited before, for re-inviting."""
    invited = select(Invitation.guest_id).where(Invitation.host_id == host_id)
    query = db.query(Guest).filter(Guest.id.in_(invited)).order_by(Guest.created_at.desc())
    if q:
        term = f"%{q.strip().lower()}%"
        query = query.filter((Guest.email.ilike(term)) | (Guest.name.ilike(term)))
    now = utcnow()
    return [{**guest_payload(row), "stats": guest_stats(db, row.id, now)} for row in query.all()]
