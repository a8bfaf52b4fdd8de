from fastapi import APIRouter, Depends

from roleswitch.api.deps import get_roles, require_permission
from roleswitch.api.responses import ok
from roleswitch.schemas.api import CreateRoleRequest, UpdateRoleRequest
from roleswitch.schemas.models import Permission
from roleswitch.services.role_service import RoleService

router = APIRouter()

read = [Depends(require_permission(Permission.READ))]
write = [Depends(require_permission(Permission.WRITE))]


@router.get("", dependencies=read)
async def list_roles(roles: RoleService = Depends(get_roles)):
    return ok(roles.list_roles())


@router.post("", dependencies=write, status_code=201)
async def create_role(request: CreateRoleRequest, roles: RoleService = Depends(get_roles)):
    role = await roles.create_role(request)
    return ok(role, message="Role created", status_code=201)


@router.get("/{role_id}", dependencies=read)
async def get_role(role_id: str, roles: RoleService = Depends(get_roles)):
    return ok(roles.get_role(role_id))


@router.put("/{role_id}", dependencies=write)
async def update_role(role_id: str, request: UpdateRoleRequest, roles: RoleService = Depends(get_roles)):
    role = await roles.update_role(role_id, request)
    return ok(role, message="Role updated")


@router.delete("/{role_id}", dependencies=write)
async def delete_role(role_id: str, roles: RoleService = Depends(get_roles)):
    """Delete a role. Its events stay in the log; an active session for it is ended."""
    await roles.delete_role(role_id)
    return ok(message="Role deleted")
