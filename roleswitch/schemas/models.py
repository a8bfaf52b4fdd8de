"""Domain records persisted in the data blob and exchanged in sync snapshots.

All models serialize with camelCase aliases (``colorHex``, ``activeStartAt``)
so the persisted JSON and the wire format match what peers expect. Python
code uses the snake_case attribute names.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventType(str, Enum):
    START = "start"
    END = "end"
    SWITCH = "switch"
    CANCEL_TRANSITION = "cancelTransition"


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class Role(CamelModel):
    id: str
    name: str
    color_hex: str
    description: str | None = None
    icon: str | None = None


DELETED_ROLE_NAME = "Deleted role"
DELETED_ROLE_COLOR = "#888888"


def deleted_role(role_id: str) -> Role:
    """Placeholder for an event whose role no longer exists."""
    return Role(id=role_id, name=DELETED_ROLE_NAME, color_hex=DELETED_ROLE_COLOR)


class EventMeta(CamelModel):
    model_config = ConfigDict(frozen=True)

    session_id: str | None = None
    from_role_id: str | None = None
    to_role_id: str | None = None
    transition_seconds: int | None = None
    duration: float | None = None
    reason: str | None = None


class Event(CamelModel):
    """Immutable log record of a role-session transition."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: EventType
    role_id: str
    at: UtcDatetime
    meta: EventMeta = Field(default_factory=EventMeta)


class Note(CamelModel):
    id: str
    text: str
    created_at: UtcDatetime


class Session(CamelModel):
    """Derived interval; never persisted. ``end_at`` is None while open."""

    id: str
    role_id: str
    start_at: UtcDatetime
    end_at: UtcDatetime | None = None
    notes: list[Note] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.end_at is None

    def duration_seconds(self, now: datetime) -> float:
        end = self.end_at or now
        return (end - self.start_at).total_seconds()


class RoleSwitchState(CamelModel):
    active_role_id: str | None = None
    active_session_id: str | None = None
    active_start_at: UtcDatetime | None = None
    in_transition: bool = False
    lock_until: UtcDatetime | None = None


class ApiKey(CamelModel):
    id: str
    name: str
    key: str
    secret: str
    permissions: list[Permission] = Field(default_factory=list)
    is_active: bool = True
    created_at: UtcDatetime
    last_used: UtcDatetime | None = None

    def allows(self, permission: Permission | None) -> bool:
        if permission is None:
            return True
        return permission in self.permissions or Permission.ADMIN in self.permissions


class SyncEndpoint(CamelModel):
    id: str
    name: str
    url: str
    api_key_ref: str
    direction: SyncDirection
    is_active: bool = True
    last_sync: UtcDatetime | None = None


class DeviceSettings(CamelModel):
    """Per-device preferences persisted alongside the data."""

    transition_seconds: int = 30
    min_session_seconds: int = 300
    enable_authentication: bool = True
    enable_sync: bool = False
    sync_interval_minutes: int = 5
    device_id: str = ""
    device_name: str = "RoleSwitch Device"


class PersistedData(CamelModel):
    """The whole blob loaded and saved by the storage backend."""

    roles: list[Role] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    state: RoleSwitchState = Field(default_factory=RoleSwitchState)
    settings: DeviceSettings = Field(default_factory=DeviceSettings)
    api_keys: list[ApiKey] = Field(default_factory=list)
    sync_endpoints: list[SyncEndpoint] = Field(default_factory=list)
    notes: dict[str, list[Note]] = Field(default_factory=dict)


class Snapshot(CamelModel):
    """Bundle exchanged between devices during sync."""

    device_id: str
    device_name: str
    timestamp: UtcDatetime
    roles: list[Role] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    state: RoleSwitchState = Field(default_factory=RoleSwitchState)
    notes: dict[str, list[Note]] = Field(default_factory=dict)
