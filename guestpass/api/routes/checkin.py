import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from guestpass.api.deps import require_roles, resolve_requester
from guestpass.core.exceptions import AuthorizationError
from guestpass.db.models import User
from guestpass.db.session import get_db
from guestpass.schemas.checkin import CheckinRequest
from guestpass.services.admission_service import OverrideRequest, checkout_visit, process_admission, visit_payload
from guestpass.services.override_service import RequesterIdentity, Unauthenticated
from guestpass.services.reward_service import dispatch_reward_notification
from guestpass.socket.server import emit_checkin_admitted

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("")
async def checkin(
    payload: CheckinRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    requester: RequesterIdentity = Depends(resolve_requester),
):
    if isinstance(requester, Unauthenticated):
        raise AuthorizationError("Authentication required", code="unauthenticated")

    outcome = process_admission(
        db,
        requester,
        credential=payload.credential,
        guests=payload.guest_entries() if payload.credential is None else None,
        host_id=payload.hostId,
        override=OverrideRequest(reason=payload.overrideReason, secret=payload.overrideSecret),
    )

    for discount_id in outcome.reward_ids:
        background_tasks.add_task(dispatch_reward_notification, discount_id)

    for result in outcome.admitted:
        await emit_checkin_admitted(
            result.host_id,
            {
                "visitId": result.visit_id,
                "guestName": result.name,
                "guestEmail": result.email,
                "overrideApplied": result.override_applied,
                "walkIn": result.walk_in,
            },
        )

    return JSONResponse(
        status_code=outcome.status_code,
        content={"data": outcome.to_dict()},
    )


@router.post("/visits/{visit_id}/checkout")
def checkout(
    visit_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("host", "security", "admin")),
):
    visit = checkout_visit(db, visit_id, user)
    return {"data": visit_payload(visit)}
