import logging

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from guestpass.api.routes import api_router
from guestpass.core.config import get_settings
from guestpass.core.exceptions import AppException, register_exception_handlers
from guestpass.core.logging import setup_logging
from guestpass.db.base import Base
from guestpass.db.models import User
from guestpass.db.session import SessionLocal, engine
from guestpass.middleware.request_context import RequestContextMiddleware
from guestpass.services.auth_service import create_user
from guestpass.services.invitation_service import expire_stale_invitations
from guestpass.services.policy_service import get_policy
from guestpass.socket.server import sio

settings = get_settings()
setup_logging(logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

fastapi_app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
fastapi_app.include_router(api_router, prefix=settings.API_V1_PREFIX)
fastapi_app.add_middleware(RequestContextMiddleware)
fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=settings.CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(fastapi_app)


DEV_USERS = [
    ("Demo Host", "host@guestpass.local", "host"),
    ("Front Desk Security", "security@guestpass.local", "security"),
    ("Building Admin", "admin@guestpass.local", "admin"),
]


def _seed_dev_data(db: Session):
    if db.query(User).count() > 0:
        return

    for full_name, email, role in DEV_USERS:
        try:
            create_user(db, full_name, email, "Password123!", role)
        except (AppException, IntegrityError):
            # Another worker/process already inserted seed rows.
            db.rollback()


@fastapi_app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        get_policy(db)
        db.commit()
        if settings.ENVIRONMENT.lower() == "development":
            _seed_dev_data(db)
        expired = expire_stale_invitations(db)
        logger.info("startup complete expired_invitations=%s", expired)
    finally:
        db.close()


app = socketio.ASGIApp(
    sio,
    other_asgi_app=fastapi_app,
    socketio_path=settings.SOCKET_PATH.lstrip("/"),
)
