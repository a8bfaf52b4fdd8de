from fastapi import APIRouter, Depends, Query

from roleswitch.api.deps import get_sessions, get_store, parse_datetime_param, require_permission
from roleswitch.api.responses import ok
from roleswitch.db.store import RoleSwitchStore
from roleswitch.schemas.api import RoleIdRequest
from roleswitch.schemas.models import Permission
from roleswitch.services.session_service import RoleSessionStateMachine

router = APIRouter()

write = [Depends(require_permission(Permission.WRITE))]


@router.post("/start", dependencies=write)
async def start_session(request: RoleIdRequest, sessions: RoleSessionStateMachine = Depends(get_sessions)):
    await sessions.start(request.role_id)
    return ok(sessions.status(), message="Session started")


@router.post("/switch", dependencies=write)
async def switch_role(request: RoleIdRequest, sessions: RoleSessionStateMachine = Depends(get_sessions)):
    """Request a switch. It commits after the transition delay unless cancelled."""
    transition = await sessions.request_switch(request.role_id)
    if sessions.pending is None:
        return ok(transition, message="Role switched")
    return ok(
        transition,
        message=f"Switching in {transition.transition_seconds} seconds",
        status_code=202,
    )


@router.post("/cancel-transition", dependencies=write)
async def cancel_transition(sessions: RoleSessionStateMachine = Depends(get_sessions)):
    await sessions.cancel_transition()
    return ok(sessions.status(), message="Role switch cancelled")


@router.post("/end", dependencies=write)
async def end_session(sessions: RoleSessionStateMachine = Depends(get_sessions)):
    event = await sessions.end()
    return ok({"duration": event.meta.duration}, message="Session ended")


@router.get("", dependencies=[Depends(require_permission(Permission.READ))])
async def list_sessions(
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    role_id: str | None = Query(default=None, alias="roleId"),
    store: RoleSwitchStore = Depends(get_store),
):
    """Sessions derived from the event log, with their notes."""
    sessions = store.derive_sessions(
        parse_datetime_param(start_date, "startDate"),
        parse_datetime_param(end_date, "endDate"),
    )
    if role_id:
        sessions = [s for s in sessions if s.role_id == role_id]
    return ok(sessions)
