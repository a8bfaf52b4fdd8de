"""Request bodies and response payloads for the /api routes."""

import re
from typing import Annotated, Any

from pydantic import AfterValidator, Field, HttpUrl, ValidationInfo, field_validator

from roleswitch.schemas.models import (
    CamelModel,
    Permission,
    Role,
    SyncDirection,
    UtcDatetime,
)

_HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")


def _validate_hex(value: str) -> str:
    if not _HEX_COLOR.match(value):
        raise ValueError("colorHex must look like #rrggbb or #rgb")
    return value


HexColor = Annotated[str, AfterValidator(_validate_hex)]


class ApiResponse(CamelModel):
    """Envelope wrapping every response: ``{success, data?, error?, message?}``."""

    success: bool
    data: Any = None
    error: str | None = None
    message: str | None = None


# ---------- Roles ----------


class CreateRoleRequest(CamelModel):
    name: str = Field(min_length=1)
    color_hex: HexColor
    description: str | None = None
    icon: str | None = None


class UpdateRoleRequest(CamelModel):
    """Partial update. ``name`` and ``colorHex`` may be omitted but not nulled."""

    name: str | None = Field(default=None, min_length=1)
    color_hex: HexColor | None = None
    description: str | None = None
    icon: str | None = None

    @field_validator("name", "color_hex")
    @classmethod
    def _reject_null(cls, value: str | None, info: ValidationInfo) -> str:
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value


# ---------- Sessions ----------


class RoleIdRequest(CamelModel):
    role_id: str = Field(min_length=1)


class CurrentSession(CamelModel):
    id: str
    role_id: str | None
    start_at: UtcDatetime
    duration: int  # whole seconds elapsed, floored


class StatusData(CamelModel):
    is_active: bool
    current_role: Role | None = None
    current_session: CurrentSession | None = None
    is_locked: bool
    lock_time_remaining: int | None = None
    in_transition: bool = False
    transition_target_role_id: str | None = None


class TransitionData(CamelModel):
    from_role_id: str
    to_role_id: str
    transition_seconds: int
    commits_at: UtcDatetime


# ---------- Notes ----------


class AddNoteRequest(CamelModel):
    session_id: str = Field(min_length=1)
    text: str = Field(min_length=1)


class UpdateNoteRequest(CamelModel):
    text: str = Field(min_length=1)


# ---------- Analytics ----------


class RoleBreakdown(CamelModel):
    role_id: str
    role_name: str
    session_count: int = 0
    total_time: float = 0.0
    percentage: float = 0.0


class DailyBreakdown(CamelModel):
    date: str
    total_time: float = 0.0
    session_count: int = 0


class AnalyticsData(CamelModel):
    total_sessions: int = 0
    total_time: float = 0.0
    role_breakdown: list[RoleBreakdown] = Field(default_factory=list)
    daily_breakdown: list[DailyBreakdown] = Field(default_factory=list)


# ---------- API keys ----------


class CreateApiKeyRequest(CamelModel):
    name: str = Field(min_length=1)
    permissions: list[Permission] = Field(min_length=1)


class UpdateApiKeyRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    permissions: list[Permission] | None = None
    is_active: bool | None = None


# ---------- Sync ----------


class CreateSyncEndpointRequest(CamelModel):
    name: str = Field(min_length=1)
    url: HttpUrl
    api_key_ref: str = Field(min_length=1)
    direction: SyncDirection


class UpdateSyncEndpointRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    url: HttpUrl | None = None
    api_key_ref: str | None = None
    direction: SyncDirection | None = None
    is_active: bool | None = None


class SyncStatusData(CamelModel):
    is_auto_sync_enabled: bool
    is_auto_sync_running: bool = False
    active_endpoints: int
    last_sync_times: dict[str, UtcDatetime] = Field(default_factory=dict)


class SyncAck(CamelModel):
    merged: bool
    timestamp: UtcDatetime


class SyncOutcome(CamelModel):
    """Result of syncing with one endpoint."""

    endpoint_id: str
    endpoint_name: str
    ok: bool
    error: str | None = None
