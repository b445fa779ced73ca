import json
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from guestpass.core.timezone import rolling_window_start, start_of_local_day, utcnow
from guestpass.db.models import AuditLog, Discount, Guest, Invitation, InvitationStatus, User, UserRole, Visit
from guestpass.services.admission_service import list_active_visits

ACTIVITY_WINDOW = timedelta(hours=24)
BLACKLIST_ACTIVITY_WINDOW = timedelta(days=7)
ACTIVITY_LIMIT = 50
TOP_HOSTS_LIMIT = 5
RECENT_OVERRIDES_LIMIT = 10


def _user_names(db: Session, user_ids: set[str]) -> dict[str, str]:
    if not user_ids:
        return {}
    rows = db.query(User.id, User.full_name).filter(User.id.in_(user_ids)).all()
    return {row.id: row.full_name for row in rows}


def _override_payload(visit: Visit, names: dict[str, str]) -> dict:
    return {
        "id": visit.id,
        "guestName": visit.guest.name if visit.guest else None,
        "guestEmail": visit.guest.email if visit.guest else None,
        "hostName": visit.host.full_name if visit.host else None,
        "overrideReason": visit.override_reason,
        # Kiosk overrides carry the operator id rather than a staff user.
        "overrideBy": names.get(visit.override_authorized_by, visit.override_authorized_by),
        "createdAt": visit.created_at.isoformat() if visit.created_at else None,
    }


def get_admin_overview(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    today_start = start_of_local_day(now)
    completed = db.query(Visit).filter(Visit.checked_in_at.is_not(None))

    invitation_counts = dict(
        db.query(Invitation.status, func.count(Invitation.id)).group_by(Invitation.status).all()
    )

    recent_overrides = (
        db.query(Visit)
        .filter(Visit.override_reason.is_not(None), Visit.checked_in_at >= rolling_window_start(now))
        .order_by(Visit.checked_in_at.desc())
        .limit(RECENT_OVERRIDES_LIMIT)
        .all()
    )
    names = _user_names(db, {row.override_authorized_by for row in recent_overrides if row.override_authorized_by})

    visit_count = func.count(Visit.id)
    top_hosts = (
        db.query(User.id, User.full_name, User.email, visit_count.label("visits"))
        .join(Visit, Visit.host_id == User.id)
        .filter(User.role == UserRole.host, Visit.checked_in_at.is_not(None))
        .group_by(User.id, User.full_name, User.email)
        .order_by(visit_count.desc())
        .limit(TOP_HOSTS_LIMIT)
        .all()
    )

    return {
        "overview": {
            "totalGuests": db.query(Guest).count(),
            "totalVisits": completed.count(),
            "activeVisits": len(list_active_visits(db, now=now)),
            "todayVisits": completed.filter(Visit.checked_in_at >= today_start).count(),
            "weekVisits": completed.filter(Visit.checked_in_at >= now - timedelta(days=7)).count(),
            "monthVisits": completed.filter(Visit.checked_in_at >= rolling_window_start(now)).count(),
        },
        "invitations": {
            "total": sum(invitation_counts.values()),
            "pending": invitation_counts.get(InvitationStatus.PENDING, 0),
            "activated": invitation_counts.get(InvitationStatus.ACTIVATED, 0),
            "checkedIn": invitation_counts.get(InvitationStatus.CHECKED_IN, 0),
            "expired": invitation_counts.get(InvitationStatus.EXPIRED, 0),
        },
        "system": {
            "blacklistedGuests": db.query(Guest).filter(Guest.blacklisted_at.is_not(None)).count(),
            "discountsIssued": db.query(Discount).count(),
            "discountsSent": db.query(Discount).filter(Discount.notification_sent.is_(True)).count(),
            "overrideCount": len(recent_overrides),
        },
        "topHosts": [
            {"id": row.id, "name": row.full_name, "email": row.email, "visitCount": row.visits}
            for row in top_hosts
        ],
        "recentOverrides": [_override_payload(row, names) for row in recent_overrides],
    }


def get_activity_feed(db: Session, now: datetime | None = None, limit: int = ACTIVITY_LIMIT) -> dict:
    """Merge recent check-ins, activations, new guests, blacklist changes and overrides, newest first."""
    now = now or utcnow()
    since = now - ACTIVITY_WINDOW
    activities: list[dict] = []

    checkins = (
        db.query(Visit)
        .filter(Visit.checked_in_at >= since)
        .order_by(Visit.checked_in_at.desc())
        .limit(20)
        .all()
    )
    names = _user_names(db, {row.override_authorized_by for row in checkins if row.override_authorized_by})
    for visit in checkins:
        activities.append(
            {
                "type": "checkin",
                "timestamp": visit.checked_in_at,
                "title": f"{visit.guest.name} checked in",
                "description": f"Hosted by {visit.host.full_name}",
                "severity": "info",
                "data": {"visitId": visit.id, "guestEmail": visit.guest.email, "override": bool(visit.override_reason)},
            }
        )
        if visit.override_reason:
            activities.append(
                {
                    "type": "override",
                    "timestamp": visit.override_authorized_at or visit.checked_in_at,
                    "title": "Capacity override used",
                    "description": f"{visit.guest.name} • Reason: {visit.override_reason}",
                    "severity": "error",
                    "data": _override_payload(visit, names),
                }
            )

    activations = (
        db.query(Invitation)
        .filter(Invitation.credential_issued_at >= since)
        .order_by(Invitation.credential_issued_at.desc())
        .limit(20)
        .all()
    )
    for invitation in activations:
        activities.append(
            {
                "type": "activation",
                "timestamp": invitation.credential_issued_at,
                "title": f"Credential issued for {invitation.guest.name}",
                "description": f"Host: {invitation.host.full_name} • Status: {invitation.status.value}",
                "severity": "success",
                "data": {"invitationId": invitation.id, "guestEmail": invitation.guest.email},
            }
        )

    for guest in db.query(Guest).filter(Guest.created_at >= since).order_by(Guest.created_at.desc()).limit(10):
        activities.append(
            {
                "type": "registration",
                "timestamp": guest.created_at,
                "title": "New guest registered",
                "description": f"{guest.name} ({guest.email})",
                "severity": "info",
                "data": {"guestId": guest.id, "guestEmail": guest.email},
            }
        )

    blacklist_rows = (
        db.query(AuditLog)
        .filter(
            AuditLog.action.in_(("guest.blacklist", "guest.unblacklist")),
            AuditLog.created_at >= now - BLACKLIST_ACTIVITY_WINDOW,
        )
        .order_by(AuditLog.created_at.desc())
        .limit(10)
        .all()
    )
    for row in blacklist_rows:
        meta = json.loads(row.meta_json or "{}")
        added = row.action == "guest.blacklist"
        activities.append(
            {
                "type": "blacklist",
                "timestamp": row.created_at,
                "title": "Guest blacklisted" if added else "Guest removed from blacklist",
                "description": meta.get("email") or row.resource_id,
                "severity": "warning",
                "data": {"guestId": row.resource_id, "actorUserId": row.actor_user_id},
            }
        )

    activities.sort(key=lambda item: item["timestamp"], reverse=True)
    return {
        "activities": [
            {**item, "timestamp": item["timestamp"].isoformat()} for item in activities[:limit]
        ],
        "totalActivities": len(activities),
        "lastUpdated": now.isoformat(),
    }
