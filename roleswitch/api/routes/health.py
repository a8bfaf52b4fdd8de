from fastapi import APIRouter, Request

from roleswitch.api.responses import ok

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Unauthenticated."""
    store = getattr(request.app.state, "store", None)
    return ok({"status": "healthy" if store is not None else "starting", "service": "roleswitch"})
