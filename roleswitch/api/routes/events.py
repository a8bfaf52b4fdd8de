from fastapi import APIRouter, Depends, Query

from roleswitch.api.deps import get_store, parse_datetime_param, require_permission
from roleswitch.api.responses import ok
from roleswitch.db.store import RoleSwitchStore
from roleswitch.domain.sessions import filter_events
from roleswitch.schemas.models import EventType, Permission

router = APIRouter()


@router.get("", dependencies=[Depends(require_permission(Permission.READ))])
async def list_events(
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    role_id: str | None = Query(default=None, alias="roleId"),
    event_type: str | None = Query(default=None, alias="type"),
    store: RoleSwitchStore = Depends(get_store),
):
    """Raw event log. Date bounds are inclusive; an unknown ``type`` is ignored."""
    try:
        parsed_type = EventType(event_type) if event_type else None
    except ValueError:
        parsed_type = None
    events = filter_events(
        store.events,
        start=parse_datetime_param(start_date, "startDate"),
        end=parse_datetime_param(end_date, "endDate"),
        role_id=role_id or None,
        event_type=parsed_type,
    )
    return ok(events)
