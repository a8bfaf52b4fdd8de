from fastapi import APIRouter, Depends

from roleswitch.api.deps import get_auth, require_permission
from roleswitch.api.responses import ok
from roleswitch.schemas.api import CreateApiKeyRequest, UpdateApiKeyRequest
from roleswitch.schemas.models import Permission
from roleswitch.services.auth_service import AuthService

router = APIRouter(dependencies=[Depends(require_permission(Permission.ADMIN))])


@router.post("", status_code=201)
async def create_api_key(request: CreateApiKeyRequest, auth: AuthService = Depends(get_auth)):
    """Create a key. The secret is shown in this response only."""
    api_key = await auth.generate_key(request.name, request.permissions)
    return ok(api_key, message="API key created", status_code=201)


@router.get("")
async def list_api_keys(auth: AuthService = Depends(get_auth)):
    return ok(auth.list_keys())


@router.put("/{key_id}")
async def update_api_key(key_id: str, request: UpdateApiKeyRequest, auth: AuthService = Depends(get_auth)):
    api_key = await auth.update_key(key_id, request)
    return ok(api_key, message="API key updated")


@router.delete("/{key_id}")
async def delete_api_key(key_id: str, auth: AuthService = Depends(get_auth)):
    await auth.delete_key(key_id)
    return ok(message="API key deleted")
