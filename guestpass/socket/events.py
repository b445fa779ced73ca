import logging

from guestpass.core.config import get_settings
from guestpass.core.security import decode_token
from guestpass.db.models import User
from guestpass.db.session import SessionLocal

settings = get_settings()
logger = logging.getLogger(__name__)

STAFF_ROLES = {"security", "admin"}


def _resolve_user(auth: dict | None) -> tuple[str, str] | None:
    token = (auth or {}).get("token")
    if not token:
        return None
    try:
        payload = decode_token(token)
    except ValueError:
        return None
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload["sub"], payload.get("role") or ""


def _host_exists(host_id: str) -> bool:
    db = SessionLocal()
    try:
        return db.query(User.id).filter(User.id == host_id, User.is_active.is_(True)).first() is not None
    finally:
        db.close()


def register_socket_events(sio):
    @sio.event(namespace=settings.DASHBOARD_NAMESPACE)
    async def connect(sid, environ, auth):
        resolved = _resolve_user(auth)
        if not resolved:
            # Returning False rejects the connection.
            return False
        user_id, role = resolved
        await sio.save_session(sid, {"userId": user_id, "role": role}, namespace=settings.DASHBOARD_NAMESPACE)
        await sio.enter_room(sid, f"host:{user_id}", namespace=settings.DASHBOARD_NAMESPACE)
        logger.debug("socket.connect sid=%s user_id=%s", sid, user_id)
        await sio.emit(
            "dashboard.snapshot",
            {"data": {"message": "connected"}},
            to=sid,
            namespace=settings.DASHBOARD_NAMESPACE,
        )

    @sio.on("dashboard.subscribe", namespace=settings.DASHBOARD_NAMESPACE)
    async def dashboard_subscribe(sid, payload):
        # Security staff may watch any host's lobby feed.
        session = await sio.get_session(sid, namespace=settings.DASHBOARD_NAMESPACE)
        host_id = (payload or {}).get("hostId")
        if not host_id or session.get("role") not in STAFF_ROLES:
            return
        if _host_exists(host_id):
            await sio.enter_room(sid, f"host:{host_id}", namespace=settings.DASHBOARD_NAMESPACE)
