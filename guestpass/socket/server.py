import socketio

from guestpass.core.config import get_settings
from guestpass.socket.events import register_socket_events

settings = get_settings()

socket_cors_origins = list(settings.cors_origins)
for origin in ("http://localhost", "https://localhost"):
    if origin not in socket_cors_origins:
        socket_cors_origins.append(origin)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*" if settings.DEBUG else socket_cors_origins,
    logger=False,
    engineio_logger=False,
)

register_socket_events(sio)


def host_room(host_id: str) -> str:
    return f"host:{host_id}"


async def emit_checkin_admitted(host_id: str, payload: dict) -> None:
    await sio.emit(
        "checkin.admitted",
        {"data": payload},
        room=host_room(host_id),
        namespace=settings.DASHBOARD_NAMESPACE,
    )
