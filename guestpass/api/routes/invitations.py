from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from guestpass.api.deps import require_roles
from guestpass.db.models import User
from guestpass.db.session import get_db
from guestpass.schemas.invitation import AcceptTermsRequest, InvitationCreate
from guestpass.services import invitation_service

router = APIRouter()
guest_router = APIRouter()


@router.post("")
def create_invitation(
    payload: InvitationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("host")),
):
    invitation = invitation_service.create_invitation(
        db,
        host=user,
        email=payload.email,
        name=payload.name,
        visit_date=payload.visitDate,
    )
    return {"data": invitation_service.invitation_payload(invitation)}


@router.get("")
def list_invitations(
    visitDate: date | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("host")),
):
    rows = invitation_service.list_invitations(db, user, visit_date=visitDate)
    return {"data": [invitation_service.invitation_payload(row) for row in rows]}


@router.get("/batch-credential")
def batch_credential(
    visitDate: date | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("host")),
):
    return {"data": invitation_service.issue_batch_credential(db, user, visit_date=visitDate)}


@router.post("/{invitation_id}/activate")
def activate_invitation(
    invitation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("host")),
):
    return {"data": invitation_service.activate_invitation(db, user, invitation_id)}


@guest_router.post("/accept-terms")
def accept_terms(payload: AcceptTermsRequest, db: Session = Depends(get_db)):
    invitation = invitation_service.accept_terms(
        db,
        invitation_id=payload.invitationId,
        terms_accepted=payload.termsAccepted,
        agreement_accepted=payload.visitorAgreementAccepted,
    )
    return {"data": {"invitation": invitation_service.invitation_payload(invitation), "accepted": True}}
