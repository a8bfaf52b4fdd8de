"""Snapshot exchange with peer devices and last-writer-wins merging.

Outbound calls (push, pull, bidirectional) are signed with the local API key
an endpoint references and travel over ``httpx``. Inbound snapshots are
merged inside one store transaction; network I/O never holds the store lock.

Merge rules, applied in order:

1. Roles upsert by id; the incoming copy replaces the local one.
2. Events union by id, then the whole log is re-sorted by timestamp. Under
   clock skew between devices this order is approximate.
3. The incoming state replaces the local one only if it has an
   ``activeStartAt``, that start is strictly later than the local one (or
   there is no local one), and its role exists after step 1.
4. Notes upsert by note id within each session.

Merging the same snapshot twice leaves the store unchanged the second time.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from roleswitch.core.clock import Clock
from roleswitch.core.exceptions import NotFoundError, SyncFailureError
from roleswitch.core.scheduler import ScheduledTask, Scheduler
from roleswitch.db.store import RoleSwitchStore
from roleswitch.schemas.api import (
    ApiResponse,
    CreateSyncEndpointRequest,
    SyncAck,
    SyncOutcome,
    SyncStatusData,
    UpdateSyncEndpointRequest,
)
from roleswitch.schemas.models import Snapshot, SyncDirection, SyncEndpoint
from roleswitch.services.auth_service import AuthService
from roleswitch.services.session_service import RoleSessionStateMachine

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _normalize_url(url: Any) -> str:
    return str(url).rstrip("/")


class SyncEngine:
    def __init__(
        self,
        store: RoleSwitchStore,
        auth: AuthService,
        clock: Clock,
        scheduler: Scheduler,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
        sessions: RoleSessionStateMachine | None = None,
    ):
        self.store = store
        self.auth = auth
        self.clock = clock
        self.scheduler = scheduler
        self.transport = transport
        self.timeout = timeout
        self.sessions = sessions
        self._auto_sync: ScheduledTask | None = None

    # ------------------------------------------------------------------
    # Endpoint management
    # ------------------------------------------------------------------

    def list_endpoints(self) -> list[SyncEndpoint]:
        return list(self.store.data.sync_endpoints)

    def get_endpoint(self, endpoint_id: str) -> SyncEndpoint:
        for endpoint in self.store.data.sync_endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        raise NotFoundError("Sync endpoint", endpoint_id)

    async def add_endpoint(self, request: CreateSyncEndpointRequest) -> SyncEndpoint:
        self.auth.get_key(request.api_key_ref)
        endpoint = SyncEndpoint(
            id=str(uuid.uuid4()),
            name=request.name,
            url=_normalize_url(request.url),
            api_key_ref=request.api_key_ref,
            direction=request.direction,
        )
        async with self.store.transaction() as data:
            data.sync_endpoints.append(endpoint)
        logger.info("sync_endpoint_added", endpoint_id=endpoint.id, url=endpoint.url)
        return endpoint

    async def update_endpoint(self, endpoint_id: str, request: UpdateSyncEndpointRequest) -> SyncEndpoint:
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if "api_key_ref" in changes:
            self.auth.get_key(changes["api_key_ref"])
        if "url" in changes:
            changes["url"] = _normalize_url(request.url)
        async with self.store.transaction():
            endpoint = self.get_endpoint(endpoint_id)
            for field, value in changes.items():
                setattr(endpoint, field, value)
        logger.info("sync_endpoint_updated", endpoint_id=endpoint_id, fields=sorted(changes))
        return endpoint

    async def delete_endpoint(self, endpoint_id: str) -> None:
        async with self.store.transaction() as data:
            self.get_endpoint(endpoint_id)
            data.sync_endpoints = [e for e in data.sync_endpoints if e.id != endpoint_id]
        logger.info("sync_endpoint_deleted", endpoint_id=endpoint_id)

    # ------------------------------------------------------------------
    # Snapshots and merge
    # ------------------------------------------------------------------

    async def ensure_device_id(self) -> str:
        """Return the device id, generating and persisting one on first use."""
        if self.store.settings.device_id:
            return self.store.settings.device_id
        async with self.store.transaction() as data:
            if not data.settings.device_id:
                data.settings.device_id = str(uuid.uuid4())
                logger.info("device_id_generated", device_id=data.settings.device_id)
        return data.settings.device_id

    def produce_pull(self, since: datetime | None = None) -> Snapshot:
        """Snapshot of local data; with ``since``, only events strictly after it."""
        data = self.store.data
        events = list(data.events)
        if since is not None:
            events = [e for e in events if e.at > since]
        return Snapshot(
            device_id=data.settings.device_id,
            device_name=data.settings.device_name,
            timestamp=self.clock.now(),
            roles=[r.model_copy() for r in data.roles],
            events=events,
            state=data.state.model_copy(),
            notes={sid: [n.model_copy() for n in notes] for sid, notes in data.notes.items()},
        )

    async def merge_snapshot(self, snapshot: Snapshot) -> bool:
        """Merge a peer snapshot into the store. Returns True if its state was adopted."""
        async with self.store.transaction() as data:
            roles = {r.id: i for i, r in enumerate(data.roles)}
            for incoming in snapshot.roles:
                if incoming.id in roles:
                    data.roles[roles[incoming.id]] = incoming
                else:
                    roles[incoming.id] = len(data.roles)
                    data.roles.append(incoming)

            known = {e.id for e in data.events}
            added = 0
            for event in snapshot.events:
                if event.id not in known:
                    known.add(event.id)
                    data.events.append(event)
                    added += 1
            data.events.sort(key=lambda e: e.at)

            for session_id, notes in snapshot.notes.items():
                if not notes:
                    continue
                local = data.notes.setdefault(session_id, [])
                positions = {n.id: i for i, n in enumerate(local)}
                for note in notes:
                    if note.id in positions:
                        local[positions[note.id]] = note
                    else:
                        positions[note.id] = len(local)
                        local.append(note)

            adopted = False
            incoming_state = snapshot.state
            local_start = data.state.active_start_at
            if incoming_state.active_start_at is not None and (
                local_start is None or incoming_state.active_start_at > local_start
            ):
                if incoming_state.active_role_id in roles:
                    # The peer's countdown does not run here.
                    data.state = incoming_state.model_copy(update={"in_transition": False})
                    adopted = True
                    if self.sessions is not None:
                        self.sessions.on_state_replaced(data, self.clock.now())

        logger.info(
            "snapshot_merged",
            peer_device_id=snapshot.device_id,
            roles=len(snapshot.roles),
            events_added=added,
            state_adopted=adopted,
        )
        return adopted

    async def receive_push(self, snapshot: Snapshot) -> SyncAck:
        await self.merge_snapshot(snapshot)
        return SyncAck(merged=True, timestamp=self.clock.now())

    async def receive_bidirectional(self, snapshot: Snapshot) -> Snapshot:
        """Merge the peer's snapshot, then answer with the full local one."""
        await self.merge_snapshot(snapshot)
        await self.ensure_device_id()
        return self.produce_pull()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def push(self, endpoint: SyncEndpoint) -> None:
        await self.ensure_device_id()
        await self._request(endpoint, "POST", "/api/sync/push", payload=self.produce_pull())

    async def pull(self, endpoint: SyncEndpoint, since: datetime | None = None) -> None:
        device_id = await self.ensure_device_id()
        since = since or endpoint.last_sync or EPOCH
        envelope = await self._request(
            endpoint,
            "GET",
            "/api/sync/pull",
            params={"since": since.isoformat(), "deviceId": device_id},
        )
        await self._merge_response(endpoint, envelope)

    async def bidirectional(self, endpoint: SyncEndpoint) -> None:
        await self.ensure_device_id()
        envelope = await self._request(
            endpoint, "POST", "/api/sync/bidirectional", payload=self.produce_pull()
        )
        await self._merge_response(endpoint, envelope)

    async def sync_endpoint(self, endpoint_id: str) -> SyncEndpoint:
        """Run one endpoint in its configured direction and stamp ``lastSync``.

        Raises SyncFailureError on any transport, auth or payload problem.
        """
        endpoint = self.get_endpoint(endpoint_id)
        if endpoint.direction == SyncDirection.PUSH:
            await self.push(endpoint)
        elif endpoint.direction == SyncDirection.PULL:
            await self.pull(endpoint)
        else:
            await self.bidirectional(endpoint)

        async with self.store.transaction():
            endpoint.last_sync = self.clock.now()
        logger.info("sync_completed", endpoint_id=endpoint.id, direction=endpoint.direction.value)
        return endpoint

    async def sync_all_endpoints(self) -> list[SyncOutcome]:
        """Visit active endpoints one after another; one failure never stops the rest."""
        outcomes = []
        for endpoint in [e for e in self.store.data.sync_endpoints if e.is_active]:
            try:
                await self.sync_endpoint(endpoint.id)
            except (SyncFailureError, NotFoundError) as exc:
                logger.warning(
                    "sync_endpoint_failed",
                    endpoint_id=endpoint.id,
                    endpoint_name=endpoint.name,
                    error=str(exc),
                )
                outcomes.append(
                    SyncOutcome(endpoint_id=endpoint.id, endpoint_name=endpoint.name, ok=False, error=str(exc))
                )
            else:
                outcomes.append(SyncOutcome(endpoint_id=endpoint.id, endpoint_name=endpoint.name, ok=True))
        return outcomes

    async def _request(
        self,
        endpoint: SyncEndpoint,
        method: str,
        path: str,
        payload: Snapshot | None = None,
        params: dict[str, str] | None = None,
    ) -> ApiResponse:
        try:
            api_key = self.auth.get_key(endpoint.api_key_ref)
        except NotFoundError as exc:
            raise SyncFailureError(endpoint.name, "API key not found") from exc

        headers, body = self.auth.sign_request(api_key, payload)
        url = f"{endpoint.url}{path}"
        logger.debug("sync_request_sent", endpoint_id=endpoint.id, method=method, url=url, headers=headers)
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    content=body or None,
                    params=params,
                )
        except httpx.HTTPError as exc:
            raise SyncFailureError(endpoint.name, f"{type(exc).__name__}: {exc}") from exc

        try:
            envelope = ApiResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SyncFailureError(
                endpoint.name, f"Malformed response (HTTP {response.status_code})"
            ) from exc

        if response.is_error or not envelope.success:
            reason = envelope.error or f"HTTP {response.status_code}"
            raise SyncFailureError(endpoint.name, reason)
        return envelope

    async def _merge_response(self, endpoint: SyncEndpoint, envelope: ApiResponse) -> None:
        if envelope.data is None:
            return
        try:
            snapshot = Snapshot.model_validate(envelope.data)
        except ValidationError as exc:
            raise SyncFailureError(endpoint.name, "Malformed snapshot") from exc
        await self.merge_snapshot(snapshot)

    # ------------------------------------------------------------------
    # Auto sync
    # ------------------------------------------------------------------

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_sync is not None

    def start_auto_sync(self) -> bool:
        """Schedule the periodic tick if sync is enabled. Returns True if running."""
        if self._auto_sync is not None:
            return True
        if not self.store.settings.enable_sync:
            return False
        interval = self.store.settings.sync_interval_minutes * 60
        self._auto_sync = self.scheduler.call_every(interval, self.sync_all_endpoints, name="auto_sync")
        logger.info("auto_sync_started", interval_seconds=interval)
        return True

    def stop_auto_sync(self) -> None:
        if self._auto_sync is not None:
            self._auto_sync.cancel()
            self._auto_sync = None
            logger.info("auto_sync_stopped")

    def sync_status(self) -> SyncStatusData:
        endpoints = self.store.data.sync_endpoints
        return SyncStatusData(
            is_auto_sync_enabled=self.store.settings.enable_sync,
            is_auto_sync_running=self.auto_sync_running,
            active_endpoints=sum(1 for e in endpoints if e.is_active),
            last_sync_times={e.id: e.last_sync for e in endpoints if e.last_sync is not None},
        )
