"""Peer-facing sync routes plus local endpoint management.

``push`` and ``bidirectional`` accept signed requests only (when
``require_signed_sync`` is on) since they write into the store.
"""

import structlog
from fastapi import APIRouter, Depends, Query

from roleswitch.api.deps import get_sync, parse_datetime_param, require_permission
from roleswitch.api.responses import ok
from roleswitch.schemas.api import CreateSyncEndpointRequest, UpdateSyncEndpointRequest
from roleswitch.schemas.models import Permission, Snapshot
from roleswitch.services.sync_service import SyncEngine

logger = structlog.get_logger(__name__)

router = APIRouter()

admin = [Depends(require_permission(Permission.ADMIN))]


@router.post("/push", dependencies=[Depends(require_permission(Permission.WRITE, signed=True))])
async def receive_push(snapshot: Snapshot, sync: SyncEngine = Depends(get_sync)):
    ack = await sync.receive_push(snapshot)
    return ok(ack, message="Sync data pushed successfully")


@router.get("/pull", dependencies=[Depends(require_permission(Permission.READ))])
async def produce_pull(
    since: str | None = Query(default=None),
    device_id: str | None = Query(default=None, alias="deviceId"),
    sync: SyncEngine = Depends(get_sync),
):
    """Local snapshot; with ``since``, only events strictly after it."""
    logger.info("sync_pull_requested", peer_device_id=device_id, since=since)
    await sync.ensure_device_id()
    return ok(sync.produce_pull(parse_datetime_param(since, "since")))


@router.post("/bidirectional", dependencies=[Depends(require_permission(Permission.WRITE, signed=True))])
async def receive_bidirectional(snapshot: Snapshot, sync: SyncEngine = Depends(get_sync)):
    reply = await sync.receive_bidirectional(snapshot)
    return ok(reply, message="Bidirectional sync completed")


@router.get("/status", dependencies=[Depends(require_permission(Permission.READ))])
async def sync_status(sync: SyncEngine = Depends(get_sync)):
    return ok(sync.sync_status())


@router.get("/endpoints", dependencies=admin)
async def list_endpoints(sync: SyncEngine = Depends(get_sync)):
    return ok(sync.list_endpoints())


@router.post("/endpoints", dependencies=admin, status_code=201)
async def add_endpoint(request: CreateSyncEndpointRequest, sync: SyncEngine = Depends(get_sync)):
    endpoint = await sync.add_endpoint(request)
    return ok(endpoint, message="Sync endpoint added", status_code=201)


@router.put("/endpoints/{endpoint_id}", dependencies=admin)
async def update_endpoint(
    endpoint_id: str,
    request: UpdateSyncEndpointRequest,
    sync: SyncEngine = Depends(get_sync),
):
    endpoint = await sync.update_endpoint(endpoint_id, request)
    return ok(endpoint, message="Sync endpoint updated")


@router.delete("/endpoints/{endpoint_id}", dependencies=admin)
async def delete_endpoint(endpoint_id: str, sync: SyncEngine = Depends(get_sync)):
    await sync.delete_endpoint(endpoint_id)
    return ok(message="Sync endpoint deleted")


@router.post("/endpoints/{endpoint_id}/run", dependencies=admin)
async def run_endpoint(endpoint_id: str, sync: SyncEngine = Depends(get_sync)):
    """Sync with one endpoint now. Failures answer 502 with the reason."""
    endpoint = await sync.sync_endpoint(endpoint_id)
    return ok(endpoint, message=f"Successfully synced with {endpoint.name}")
