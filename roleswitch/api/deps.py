"""FastAPI dependencies: service lookup on ``app.state`` and per-route auth."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from fastapi import Request

from roleswitch.core.config import Settings
from roleswitch.core.exceptions import AuthFailureError, PermissionDeniedError, ValidationFailureError
from roleswitch.db.store import RoleSwitchStore
from roleswitch.schemas.models import ApiKey, Permission
from roleswitch.services.auth_service import AuthService
from roleswitch.services.note_service import NoteService
from roleswitch.services.role_service import RoleService
from roleswitch.services.session_service import RoleSessionStateMachine
from roleswitch.services.sync_service import SyncEngine


def get_store(request: Request) -> RoleSwitchStore:
    return request.app.state.store


def get_sessions(request: Request) -> RoleSessionStateMachine:
    return request.app.state.sessions


def get_roles(request: Request) -> RoleService:
    return request.app.state.roles


def get_notes(request: Request) -> NoteService:
    return request.app.state.notes


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_sync(request: Request) -> SyncEngine:
    return request.app.state.sync


def require_permission(
    permission: Permission | None,
    *,
    signed: bool = False,
) -> Callable[[Request], Awaitable[ApiKey | None]]:
    """Build a dependency that authenticates the request for ``permission``.

    With ``signed=True`` the route also demands X-Timestamp/X-Signature when
    ``require_signed_sync`` is on. Returns the (masked) key, or None when
    authentication is disabled.

    Usage:
        @router.get("/status", dependencies=[Depends(require_permission(Permission.READ))])
    """

    async def dependency(request: Request) -> ApiKey | None:
        auth: AuthService = request.app.state.auth
        settings: Settings = request.app.state.settings
        body = await request.body()
        result = await auth.authenticate(
            request.headers,
            required_permission=permission,
            body=body,
            require_signature=signed and settings.require_signed_sync,
        )
        if not result.ok:
            if result.permission_denied:
                raise PermissionDeniedError(result.reason or "Insufficient permissions")
            raise AuthFailureError(result.reason or "Authentication failed")
        request.state.api_key_id = result.key.id if result.key else None
        return result.key

    return dependency


def parse_datetime_param(value: str | None, name: str) -> datetime | None:
    """Parse an ISO-8601 query parameter; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationFailureError(f"Invalid {name}: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
