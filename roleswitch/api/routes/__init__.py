from fastapi import APIRouter

from roleswitch.api.routes import analytics, auth_keys, events, health, notes, roles, sessions, status, sync

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(status.router, tags=["status"])
api_router.include_router(roles.router, prefix="/roles", tags=["roles"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
api_router.include_router(notes.router, prefix="/notes", tags=["notes"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
api_router.include_router(auth_keys.router, prefix="/auth/keys", tags=["auth"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
