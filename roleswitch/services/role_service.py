"""Role CRUD. Deleting a role leaves its events in the log untouched."""

import uuid

import structlog
from pydantic import ValidationError

from roleswitch.core.clock import Clock
from roleswitch.core.exceptions import ValidationFailureError
from roleswitch.db.store import RoleSwitchStore
from roleswitch.schemas.api import CreateRoleRequest, UpdateRoleRequest
from roleswitch.schemas.models import Role
from roleswitch.services.session_service import RoleSessionStateMachine

logger = structlog.get_logger(__name__)


class RoleService:
    def __init__(self, store: RoleSwitchStore, sessions: RoleSessionStateMachine, clock: Clock):
        self.store = store
        self.sessions = sessions
        self.clock = clock

    def list_roles(self) -> list[Role]:
        return list(self.store.data.roles)

    def get_role(self, role_id: str) -> Role:
        return self.store.get_role(role_id)

    async def create_role(self, request: CreateRoleRequest) -> Role:
        role = Role(id=str(uuid.uuid4()), **request.model_dump())
        async with self.store.transaction() as data:
            data.roles.append(role)
        logger.info("role_created", role_id=role.id, name=role.name)
        return role

    async def update_role(self, role_id: str, request: UpdateRoleRequest) -> Role:
        async with self.store.transaction() as data:
            role = self.store.get_role(role_id)
            changes = request.model_dump(exclude_unset=True)
            try:
                updated = Role.model_validate({**role.model_dump(), **changes})
            except ValidationError as exc:
                raise ValidationFailureError(f"Invalid role update: {exc.errors()[0]['msg']}") from exc
            data.roles = [updated if r.id == role_id else r for r in data.roles]
        logger.info("role_updated", role_id=role_id)
        return updated

    async def delete_role(self, role_id: str) -> None:
        """Remove a role; if it is the active one, its session is force-ended."""
        async with self.store.transaction() as data:
            self.store.get_role(role_id)
            if data.state.active_role_id == role_id:
                self.sessions.force_end(data, self.clock.now(), reason="role_deleted")
            data.roles = [r for r in data.roles if r.id != role_id]
        logger.info("role_deleted", role_id=role_id)
