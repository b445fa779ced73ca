from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from guestpass.db.models import User, Visit

NO_ACTIVE_VISIT = "none"
SAME_HOST = "same-host"
CROSS_HOST = "cross-host"


@dataclass(frozen=True)
class ReentryResult:
    kind: str
    visit: Visit | None = None
    other_host_id: str | None = None
    other_host_name: str | None = None

    @property
    def found(self) -> bool:
        return self.kind != NO_ACTIVE_VISIT


def _active_visits_query(db: Session, guest_id: str, now: datetime):
    return db.query(Visit).filter(
        Visit.guest_id == guest_id,
        Visit.checked_in_at.is_not(None),
        Visit.expires_at > now,
        Visit.checked_out_at.is_(None),
    )


def resolve_reentry(db: Session, guest_id: str, host_id: str, now: datetime) -> ReentryResult:
    """Find an open visit for the guest, preferring one under ``host_id``."""
    same_host = (
        _active_visits_query(db, guest_id, now)
        .filter(Visit.host_id == host_id)
        .order_by(Visit.checked_in_at.desc())
        .first()
    )
    if same_host:
        return ReentryResult(kind=SAME_HOST, visit=same_host)

    elsewhere = (
        _active_visits_query(db, guest_id, now)
        .filter(Visit.host_id != host_id)
        .order_by(Visit.checked_in_at.desc())
        .first()
    )
    if elsewhere:
        other_host = db.query(User).filter(User.id == elsewhere.host_id).first()
        return ReentryResult(
            kind=CROSS_HOST,
            visit=elsewhere,
            other_host_id=elsewhere.host_id,
            other_host_name=other_host.full_name if other_host else None,
        )

    return ReentryResult(kind=NO_ACTIVE_VISIT)
