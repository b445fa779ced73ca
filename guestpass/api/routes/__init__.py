from fastapi import APIRouter

from guestpass.api.routes import admin, auth, checkin, guests, health, invitations

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(checkin.router, prefix="/checkin", tags=["checkin"])
api_router.include_router(invitations.router, prefix="/invitations", tags=["invitations"])
api_router.include_router(invitations.guest_router, prefix="/guest", tags=["guest"])
api_router.include_router(guests.router, prefix="/guests", tags=["guests"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
