from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from guestpass.api.deps import require_roles
from guestpass.db.models import User
from guestpass.db.session import get_db
from guestpass.services import dashboard_service, guest_service, invitation_service, policy_service
from guestpass.services.admission_service import list_active_visits, visit_payload
from guestpass.services.audit_service import list_audit_logs

router = APIRouter()


class PolicyUpdate(BaseModel):
    guestMonthlyLimit: int
    hostConcurrentLimit: int


class BlacklistAction(BaseModel):
    action: str


@router.get("/policies")
def get_policies(
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin", "security")),
):
    row = policy_service.get_policy(db)
    db.commit()
    return {"data": policy_service.policy_payload(row)}


@router.put("/policies")
def update_policies(
    payload: PolicyUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    row = policy_service.update_policy(
        db,
        actor_user_id=user.id,
        guest_monthly_limit=payload.guestMonthlyLimit,
        host_concurrent_limit=payload.hostConcurrentLimit,
    )
    return {"data": policy_service.policy_payload(row)}


@router.post("/guests/{guest_id}/blacklist")
def toggle_blacklist(
    guest_id: str,
    payload: BlacklistAction,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin", "security")),
):
    guest, message = guest_service.set_blacklist(db, guest_id, payload.action, actor_user_id=user.id)
    return {"data": {"guest": guest_service.guest_payload(guest), "message": message}}


@router.get("/guests")
def search_guests(
    q: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin", "security")),
):
    return {"data": guest_service.search_guests(db, q=q, limit=limit)}


@router.get("/visits/active")
def active_visits(
    hostId: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin", "security")),
):
    return {"data": [visit_payload(row) for row in list_active_visits(db, host_id=hostId)]}


@router.get("/audit")
def audit_logs(
    action: str | None = Query(default=None),
    resourceType: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin")),
):
    return {"data": list_audit_logs(db, limit=limit, action=action, resource_type=resourceType)}


@router.post("/invitations/expire")
def expire_invitations(
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin")),
):
    return {"data": {"expired": invitation_service.expire_stale_invitations(db)}}


@router.get("/stats")
def admin_stats(
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin", "security")),
):
    return {"data": dashboard_service.get_admin_overview(db)}


@router.get("/activity")
def admin_activity(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("admin", "security")),
):
    return {"data": dashboard_service.get_activity_feed(db, limit=limit)}
