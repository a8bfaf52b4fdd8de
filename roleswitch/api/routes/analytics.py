from fastapi import APIRouter, Depends, Query, Request

from roleswitch.api.deps import get_store, parse_datetime_param, require_permission
from roleswitch.api.responses import ok
from roleswitch.db.store import RoleSwitchStore
from roleswitch.domain.analytics import compute_analytics
from roleswitch.schemas.models import Permission

router = APIRouter()


@router.get("", dependencies=[Depends(require_permission(Permission.READ))])
async def get_analytics(
    request: Request,
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    store: RoleSwitchStore = Depends(get_store),
):
    sessions = store.derive_sessions(
        parse_datetime_param(start_date, "startDate"),
        parse_datetime_param(end_date, "endDate"),
    )
    now = request.app.state.clock.now()
    return ok(compute_analytics(sessions, store.data.roles, now))
