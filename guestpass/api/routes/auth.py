from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from guestpass.api.deps import get_current_user
from guestpass.db.models import User
from guestpass.db.session import get_db
from guestpass.schemas.auth import LoginRequest, LogoutRequest, RefreshTokenRequest
from guestpass.services import auth_service

router = APIRouter()


@router.post("/login")
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    data = auth_service.login(
        db=db,
        email=payload.email,
        password=payload.password,
        user_agent=request.headers.get("user-agent", ""),
        ip_address=request.client.host if request.client else "",
        device_label=payload.deviceLabel,
    )
    return {"data": data.model_dump()}


@router.post("/refresh-token")
def refresh_token(payload: RefreshTokenRequest, db: Session = Depends(get_db)):
    data = auth_service.rotate_refresh_token(db, payload.refreshToken)
    return {"data": data}


@router.post("/logout")
def logout(payload: LogoutRequest, db: Session = Depends(get_db)):
    auth_service.logout(db, payload.refreshToken)
    return {"data": {"status": "ok"}}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"data": auth_service.user_payload(user)}
