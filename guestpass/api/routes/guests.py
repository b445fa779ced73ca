from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from guestpass.api.deps import require_roles
from guestpass.db.models import User
from guestpass.db.session import get_db
from guestpass.services.guest_service import host_guest_history

router = APIRouter()


@router.get("/history")
def guest_history(
    query: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("host")),
):
    return {"data": host_guest_history(db, user.id, q=query)}
