from fastapi import APIRouter, Depends

from roleswitch.api.deps import get_sessions, require_permission
from roleswitch.api.responses import ok
from roleswitch.schemas.models import Permission
from roleswitch.services.session_service import RoleSessionStateMachine

router = APIRouter()


@router.get("/status", dependencies=[Depends(require_permission(Permission.READ))])
async def get_status(sessions: RoleSessionStateMachine = Depends(get_sessions)):
    """Active role, elapsed time, lock and transition state."""
    return ok(sessions.status())
