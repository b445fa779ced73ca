import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from guestpass.core.exceptions import AppException, ConsistencyError
from guestpass.core.timezone import local_today, to_local, utcnow
from guestpass.db.models import (
    INVITATION_TRANSITIONS,
    OPEN_INVITATION_STATUSES,
    Invitation,
    InvitationStatus,
    User,
)
from guestpass.services.credential_service import (
    BatchGuest,
    credential_display_uri,
    encode_batch_credential,
    issue_single_credential,
)
from guestpass.services.eligibility_service import guest_rolling_limit_denial, has_valid_acceptance
from guestpass.services.guest_service import record_acceptance, upsert_guest
from guestpass.services.notification_service import KIND_INVITATION, OutboxNotificationSink
from guestpass.services.policy_service import get_policy

logger = logging.getLogger(__name__)


def advance_invitation_status(invitation: Invitation, new_status: InvitationStatus) -> Invitation:
    """Move an invitation forward. CHECKED_IN and EXPIRED are terminal."""
    allowed = INVITATION_TRANSITIONS.get(invitation.status, set())
    if new_status not in allowed:
        raise ConsistencyError(
            f"Invitation cannot move from {invitation.status.value} to {new_status.value}",
            code="invalid-transition",
        )
    invitation.status = new_status
    return invitation


def invitation_payload(row: Invitation) -> dict:
    return {
        "id": row.id,
        "guestId": row.guest_id,
        "guestEmail": row.guest.email if row.guest else None,
        "guestName": row.guest.name if row.guest else None,
        "hostId": row.host_id,
        "visitDate": row.visit_date.isoformat(),
        "status": row.status.value,
        "credentialExpiresAt": row.credential_expires_at.isoformat() if row.credential_expires_at else None,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


def _get_host_invitation(db: Session, host: User, invitation_id: str) -> Invitation:
    invitation = db.query(Invitation).filter(Invitation.id == invitation_id).first()
    if not invitation:
        raise AppException("Invitation not found", status_code=404)
    if invitation.host_id != host.id:
        raise AppException("Unauthorized - not your invitation", status_code=403)
    return invitation


def create_invitation(
    db: Session,
    host: User,
    email: str,
    name: str,
    visit_date: date | None = None,
    now: datetime | None = None,
) -> Invitation:
    now = now or utcnow()
    visit_date = visit_date or local_today(now)
    if visit_date < local_today(now):
        raise AppException("Visit date cannot be in the past", status_code=400)

    guest = upsert_guest(db, email, name)
    if guest.is_blacklisted:
        raise AppException("This guest cannot be invited. Please contact building security.", status_code=403)

    denial = guest_rolling_limit_denial(db, guest.id, now, get_policy(db))
    if denial:
        raise AppException(denial.message, status_code=400, code=denial.reason.value)

    invitation = Invitation(guest_id=guest.id, host_id=host.id, visit_date=visit_date)
    db.add(invitation)
    db.commit()
    db.refresh(invitation)

    result = OutboxNotificationSink(db).send(
        guest.email,
        KIND_INVITATION,
        {
            "invitationId": invitation.id,
            "guestName": guest.name,
            "hostName": host.full_name,
            "visitDate": visit_date.isoformat(),
        },
    )
    if not result["success"]:
        logger.warning("invitation.create notification not queued invitation_id=%s", invitation.id)
    logger.info(
        "invitation.create host_id=%s guest_id=%s invitation_id=%s visit_date=%s",
        host.id,
        guest.id,
        invitation.id,
        visit_date,
    )
    return invitation


def list_invitations(db: Session, host: User, visit_date: date | None = None) -> list[Invitation]:
    query = db.query(Invitation).filter(Invitation.host_id == host.id)
    if visit_date:
        query = query.filter(Invitation.visit_date == visit_date)
    return query.order_by(Invitation.visit_date.desc(), Invitation.created_at.desc()).all()


def accept_terms(
    db: Session,
    invitation_id: str,
    terms_accepted: bool,
    agreement_accepted: bool,
    now: datetime | None = None,
) -> Invitation:
    if not terms_accepted or not agreement_accepted:
        raise AppException("Both Terms and Visitor Agreement must be accepted", status_code=400)

    invitation = db.query(Invitation).filter(Invitation.id == invitation_id).first()
    if not invitation:
        raise AppException("Invitation not found", status_code=404)
    if invitation.status == InvitationStatus.EXPIRED:
        raise AppException("This invitation has expired", status_code=400)
    if invitation.status == InvitationStatus.CHECKED_IN:
        raise AppException("This invitation has already been used", status_code=400)

    record_acceptance(db, invitation.guest, now=now, invitation_id=invitation.id, source="guest")
    db.commit()
    db.refresh(invitation)
    logger.info("invitation.accept_terms invitation_id=%s guest_id=%s", invitation.id, invitation.guest_id)
    return invitation


def activate_invitation(db: Session, host: User, invitation_id: str, now: datetime | None = None) -> dict:
    """Issue the single-guest check-in credential for an invitation."""
    now = now or utcnow()
    invitation = _get_host_invitation(db, host, invitation_id)
    if invitation.status not in OPEN_INVITATION_STATUSES:
        raise AppException(f"Invitation is already {invitation.status.value.lower()}", status_code=400)
    if invitation.guest.is_blacklisted:
        raise AppException("Entry denied. Please contact building security.", status_code=403)
    if not has_valid_acceptance(db, invitation.guest_id, now):
        raise AppException(
            "Guest must accept the Terms & Visitor Agreement before a QR code can be generated",
            status_code=400,
            code="terms-required",
        )
    denial = guest_rolling_limit_denial(db, invitation.guest_id, now, get_policy(db))
    if denial:
        raise AppException(denial.message, status_code=400, code=denial.reason.value)

    token, expires_at = issue_single_credential(invitation.id, invitation.guest.email, host.id, now=now)
    advance_invitation_status(invitation, InvitationStatus.ACTIVATED)
    invitation.credential = token
    invitation.credential_issued_at = now
    invitation.credential_expires_at = expires_at
    db.commit()
    db.refresh(invitation)
    logger.info("invitation.activate invitation_id=%s expires_at=%s", invitation.id, expires_at.isoformat())
    return {
        "invitation": invitation_payload(invitation),
        "credential": token,
        "displayUri": credential_display_uri(token),
        "expiresAt": expires_at.isoformat(),
    }


def issue_batch_credential(db: Session, host: User, visit_date: date | None = None, now: datetime | None = None) -> dict:
    """Host-level batch credential for every ready guest invited on ``visit_date``."""
    now = now or utcnow()
    visit_date = visit_date or local_today(now)
    rows = (
        db.query(Invitation)
        .filter(
            Invitation.host_id == host.id,
            Invitation.visit_date == visit_date,
            Invitation.status.in_(OPEN_INVITATION_STATUSES),
        )
        .order_by(Invitation.created_at.asc())
        .all()
    )

    guests: list[BatchGuest] = []
    seen: set[str] = set()
    for row in rows:
        guest = row.guest
        if guest.id in seen or guest.is_blacklisted or not has_valid_acceptance(db, guest.id, now):
            continue
        seen.add(guest.id)
        guests.append(BatchGuest(email=guest.email, name=guest.name))

    if not guests:
        raise AppException("No guests are ready for check-in on this date", status_code=404)

    credential = encode_batch_credential(guests, host_id=host.id)
    return {
        "credential": credential,
        "displayUri": credential_display_uri(credential),
        "visitDate": visit_date.isoformat(),
        "guests": [{"email": guest.email, "name": guest.name} for guest in guests],
        "hostId": host.id,
    }


def expire_stale_invitations(db: Session, now: datetime | None = None) -> int:
    today = to_local(now or utcnow()).date()
    rows = (
        db.query(Invitation)
        .filter(Invitation.status.in_(OPEN_INVITATION_STATUSES), Invitation.visit_date < today)
        .all()
    )
    for row in rows:
        advance_invitation_status(row, InvitationStatus.EXPIRED)
    db.commit()
    if rows:
        logger.info("invitation.expire_stale expired=%s before=%s", len(rows), today)
    return len(rows)
