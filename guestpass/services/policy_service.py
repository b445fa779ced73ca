from sqlalchemy.orm import Session

from guestpass.core.config import get_settings
from guestpass.core.exceptions import AppException
from guestpass.db.models import POLICY_ROW_ID, Policy
from guestpass.services.audit_service import write_audit_log

settings = get_settings()

GUEST_MONTHLY_LIMIT_RANGE = (1, 100)
HOST_CONCURRENT_LIMIT_RANGE = (1, 50)


def get_policy(db: Session) -> Policy:
    """Read the policy row from the store.

    Called once per admission decision; the result is never cached across
    requests because it directly gates capacity.
    """
    row = db.query(Policy).filter(Policy.id == POLICY_ROW_ID).first()
    if row:
        return row
    row = Policy(
        id=POLICY_ROW_ID,
        guest_monthly_limit=settings.GUEST_MONTHLY_LIMIT_DEFAULT,
        host_concurrent_limit=settings.HOST_CONCURRENT_LIMIT_DEFAULT,
    )
    db.add(row)
    db.flush()
    return row


def policy_payload(row: Policy) -> dict:
    return {
        "guestMonthlyLimit": row.guest_monthly_limit,
        "hostConcurrentLimit": row.host_concurrent_limit,
        "updatedBy": row.updated_by,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


def _validate_limits(guest_monthly_limit: int, host_concurrent_limit: int) -> None:
    low, high = GUEST_MONTHLY_LIMIT_RANGE
    if not low <= guest_monthly_limit <= high:
        raise AppException(f"Guest monthly limit must be between {low} and {high}", status_code=400)
    low, high = HOST_CONCURRENT_LIMIT_RANGE
    if not low <= host_concurrent_limit <= high:
        raise AppException(f"Host concurrent limit must be between {low} and {high}", status_code=400)


def update_policy(db: Session, actor_user_id: str, guest_monthly_limit: int, host_concurrent_limit: int) -> Policy:
    # Both fields are validated before either is written.
    _validate_limits(guest_monthly_limit, host_concurrent_limit)

    row = get_policy(db)
    previous = {"guestMonthlyLimit": row.guest_monthly_limit, "hostConcurrentLimit": row.host_concurrent_limit}
    row.guest_monthly_limit = guest_monthly_limit
    row.host_concurrent_limit = host_concurrent_limit
    row.updated_by = actor_user_id
    write_audit_log(
        db,
        actor_user_id=actor_user_id,
        action="policy.update",
        resource_type="policy",
        resource_id=str(row.id),
        meta={
            "previous": previous,
            "guestMonthlyLimit": guest_monthly_limit,
            "hostConcurrentLimit": host_concurrent_limit,
        },
        commit=False,
    )
    db.commit()
    db.refresh(row)
    return row
