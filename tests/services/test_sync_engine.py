"""Tests for snapshot merging and outbound sync over a mocked transport."""

import json

import httpx
import pytest

from factories import at, make_event, make_store
from roleswitch.core.exceptions import NotFoundError, SyncFailureError
from roleswitch.schemas.api import CreateSyncEndpointRequest
from roleswitch.schemas.models import (
    EventType,
    Note,
    Permission,
    Role,
    RoleSwitchState,
    Snapshot,
    SyncDirection,
)
from roleswitch.services.auth_service import AuthService, compute_signature
from roleswitch.services.sync_service import SyncEngine

pytestmark = pytest.mark.unit


def _snapshot(events=(), roles=(), state=None, notes=None, timestamp=None) -> Snapshot:
    return Snapshot(
        device_id="device-b",
        device_name="Desktop",
        timestamp=timestamp or at(0),
        roles=list(roles),
        events=list(events),
        state=state or RoleSwitchState(),
        notes=notes or {},
    )


def _active(role_id: str, seconds: float, session_id: str = "peer-session") -> RoleSwitchState:
    return RoleSwitchState(
        active_role_id=role_id,
        active_session_id=session_id,
        active_start_at=at(seconds),
        lock_until=at(seconds + 300),
    )


@pytest.fixture
def engine(store, auth, clock, scheduler):
    return SyncEngine(store, auth, clock, scheduler)


def _engine_with(handler, store, auth, clock, scheduler) -> SyncEngine:
    return SyncEngine(store, auth, clock, scheduler, transport=httpx.MockTransport(handler))


async def _endpoint(engine, auth, name, url, direction=SyncDirection.PUSH):
    api_key = await auth.generate_key(f"{name}-key", [Permission.WRITE])
    return await engine.add_endpoint(
        CreateSyncEndpointRequest(name=name, url=url, api_key_ref=api_key.id, direction=direction)
    ), api_key


# ---------- merge ----------


async def test_merge_is_idempotent(engine, store):
    snapshot = _snapshot(
        events=[
            make_event("p1", EventType.START, "coder", 0, session_id="ps1"),
            make_event("p2", EventType.END, "coder", 600, session_id="ps1"),
        ],
        roles=[Role(id="coder", name="Coder (renamed)", color_hex="#00ff00")],
        state=_active("coder", 700),
        notes={"ps1": [Note(id="n1", text="standup", created_at=at(10))]},
    )

    await engine.merge_snapshot(snapshot)
    once = store.data.model_dump()
    await engine.merge_snapshot(snapshot)

    assert store.data.model_dump() == once
    assert [e.id for e in store.events] == ["p1", "p2"]
    assert store.find_role("coder").name == "Coder (renamed)"
    assert len(store.data.notes["ps1"]) == 1


async def test_events_union_by_id_and_resort(engine, store):
    async with store.transaction():
        store.append_event(make_event("l1", EventType.START, "writer", 100, session_id="ls1"))

    await engine.merge_snapshot(_snapshot(events=[
        make_event("l1", EventType.START, "writer", 100, session_id="ls1"),
        make_event("p1", EventType.START, "coder", 50, session_id="ps1"),
    ]))

    assert [e.id for e in store.events] == ["p1", "l1"]


async def test_clock_skew_orders_by_timestamp_not_causality(engine, store):
    # Locally: writer session from 100s. The peer's clock runs behind, so its
    # switch that really happened later is stamped before our start and is
    # superseded by it in the fold.
    async with store.transaction():
        store.append_event(make_event("l1", EventType.START, "writer", 100, session_id="ls1"))

    await engine.merge_snapshot(_snapshot(events=[
        make_event("p1", EventType.SWITCH, "coder", 20, session_id="ps1"),
    ]))

    sessions = store.derive_sessions()
    assert [(s.role_id, s.start_at, s.end_at) for s in sessions] == [
        ("writer", at(100), None),
    ]


async def test_state_adopted_only_when_strictly_newer(engine, store):
    async with store.transaction() as data:
        data.state = _active("writer", 100, session_id="local")

    assert not await engine.merge_snapshot(_snapshot(state=_active("coder", 50)))
    assert store.state.active_session_id == "local"

    assert not await engine.merge_snapshot(_snapshot(state=_active("coder", 100)))
    assert store.state.active_session_id == "local"

    assert await engine.merge_snapshot(_snapshot(state=_active("coder", 150)))
    assert store.state.active_session_id == "peer-session"
    assert store.state.active_role_id == "coder"


async def test_state_with_unknown_role_not_adopted(engine, store):
    assert not await engine.merge_snapshot(_snapshot(state=_active("ghost", 500)))
    assert store.state.active_session_id is None


async def test_state_role_may_arrive_in_same_snapshot(engine, store):
    designer = Role(id="designer", name="Designer", color_hex="#123456")

    adopted = await engine.merge_snapshot(_snapshot(roles=[designer], state=_active("designer", 500)))

    assert adopted
    assert store.state.active_role_id == "designer"


async def test_idle_incoming_state_never_adopted(engine, store):
    async with store.transaction() as data:
        data.state = _active("writer", 100, session_id="local")

    assert not await engine.merge_snapshot(_snapshot(state=RoleSwitchState()))
    assert store.state.active_session_id == "local"


async def test_adopted_state_drops_peer_transition_flag(engine, store):
    incoming = _active("coder", 500).model_copy(update={"in_transition": True})

    await engine.merge_snapshot(_snapshot(state=incoming))

    assert not store.state.in_transition


async def test_produce_pull_since_is_strict(engine, store):
    async with store.transaction():
        store.append_event(make_event("e1", EventType.START, "writer", 0, session_id="s1"))
        store.append_event(make_event("e2", EventType.SWITCH, "coder", 600, session_id="s2"))
        store.append_event(make_event("e3", EventType.END, "coder", 1200, session_id="s2"))

    snapshot = engine.produce_pull(since=at(600))

    assert [e.id for e in snapshot.events] == ["e3"]
    assert snapshot.device_id == "device-a"
    assert len(snapshot.roles) == 3
    assert [e.id for e in engine.produce_pull().events] == ["e1", "e2", "e3"]


async def test_receive_bidirectional_returns_merged_view(engine, store):
    reply = await engine.receive_bidirectional(_snapshot(events=[
        make_event("p1", EventType.START, "coder", 0, session_id="ps1"),
    ]))

    assert [e.id for e in reply.events] == ["p1"]
    assert reply.device_id == "device-a"


async def test_device_id_generated_on_first_use(auth, clock, scheduler):
    store = make_store(device_id="")
    engine = SyncEngine(store, auth, clock, scheduler)

    device_id = await engine.ensure_device_id()

    assert device_id
    assert store.settings.device_id == device_id
    assert await engine.ensure_device_id() == device_id


# ---------- endpoints ----------


async def test_add_endpoint_strips_trailing_slash(engine, auth):
    endpoint, _ = await _endpoint(engine, auth, "desk", "http://desk.local:3030/")

    assert endpoint.url == "http://desk.local:3030"
    assert engine.get_endpoint(endpoint.id).is_active


async def test_add_endpoint_requires_known_key(engine):
    with pytest.raises(NotFoundError):
        await engine.add_endpoint(CreateSyncEndpointRequest(
            name="x", url="http://x.local", api_key_ref="missing", direction=SyncDirection.PUSH
        ))


# ---------- outbound ----------


async def test_push_is_signed(store, auth, clock, scheduler):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"merged": True, "timestamp": "2025-01-01T09:00:00Z"}})

    engine = _engine_with(handler, store, auth, clock, scheduler)
    endpoint, api_key = await _endpoint(engine, auth, "desk", "http://desk.local")

    await engine.sync_endpoint(endpoint.id)

    [request] = seen
    assert request.method == "POST"
    assert str(request.url) == "http://desk.local/api/sync/push"
    assert request.headers["X-API-Key"] == api_key.key
    assert request.headers["X-Signature"] == compute_signature(
        api_key.secret, request.headers["X-Timestamp"], request.content
    )
    body = json.loads(request.content)
    assert body["deviceId"] == "device-a"
    assert "secret" not in request.content.decode()
    assert engine.get_endpoint(endpoint.id).last_sync == clock.now()


async def test_pull_sends_since_and_merges_reply(store, auth, clock, scheduler):
    peer = make_store(device_id="device-b")
    async with peer.transaction():
        peer.append_event(make_event("p1", EventType.START, "coder", 0, session_id="ps1"))
    peer_engine = SyncEngine(peer, AuthService(peer, clock), clock, scheduler)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        snapshot = peer_engine.produce_pull().model_dump(mode="json", by_alias=True)
        return httpx.Response(200, json={"success": True, "data": snapshot})

    engine = _engine_with(handler, store, auth, clock, scheduler)
    endpoint, _ = await _endpoint(engine, auth, "desk", "http://desk.local", SyncDirection.PULL)

    await engine.sync_endpoint(endpoint.id)

    params = seen[0].url.params
    assert seen[0].method == "GET"
    assert params["since"] == "1970-01-01T00:00:00+00:00"
    assert params["deviceId"] == "device-a"
    assert [e.id for e in store.events] == ["p1"]

    await engine.sync_endpoint(endpoint.id)
    assert seen[1].url.params["since"] == clock.now().isoformat()


async def test_error_envelope_becomes_sync_failure(store, auth, clock, scheduler):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"success": False, "error": "Invalid signature"})

    engine = _engine_with(handler, store, auth, clock, scheduler)
    endpoint, _ = await _endpoint(engine, auth, "desk", "http://desk.local", SyncDirection.BIDIRECTIONAL)

    with pytest.raises(SyncFailureError) as exc_info:
        await engine.sync_endpoint(endpoint.id)

    assert exc_info.value.reason == "Invalid signature"
    assert engine.get_endpoint(endpoint.id).last_sync is None


async def test_malformed_reply_becomes_sync_failure(store, auth, clock, scheduler):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "data": {"events": "not-a-list"}})

    engine = _engine_with(handler, store, auth, clock, scheduler)
    endpoint, _ = await _endpoint(engine, auth, "desk", "http://desk.local", SyncDirection.PULL)

    with pytest.raises(SyncFailureError):
        await engine.sync_endpoint(endpoint.id)
    assert store.events == []


async def test_sync_all_isolates_failing_endpoints(store, auth, clock, scheduler):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.local":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"success": True, "data": {"merged": True, "timestamp": "2025-01-01T09:00:00Z"}})

    engine = _engine_with(handler, store, auth, clock, scheduler)
    down, _ = await _endpoint(engine, auth, "down", "http://down.local")
    up, _ = await _endpoint(engine, auth, "up", "http://up.local")
    orphan, orphan_key = await _endpoint(engine, auth, "orphan", "http://up.local")
    await auth.delete_key(orphan_key.id)
    paused, _ = await _endpoint(engine, auth, "paused", "http://up.local")
    engine.get_endpoint(paused.id).is_active = False

    outcomes = await engine.sync_all_endpoints()

    assert [(o.endpoint_name, o.ok) for o in outcomes] == [("down", False), ("up", True), ("orphan", False)]
    assert "ConnectError" in outcomes[0].error
    assert "API key not found" in outcomes[2].error
    assert engine.get_endpoint(up.id).last_sync == clock.now()
    assert engine.get_endpoint(down.id).last_sync is None


async def test_auto_sync_ticks_on_interval(store, auth, clock, scheduler):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"success": True, "data": {"merged": True, "timestamp": "2025-01-01T09:00:00Z"}})

    engine = _engine_with(handler, store, auth, clock, scheduler)
    await _endpoint(engine, auth, "desk", "http://desk.local")

    assert not engine.start_auto_sync()  # sync disabled by default

    store.data.settings.enable_sync = True
    store.data.settings.sync_interval_minutes = 5
    assert engine.start_auto_sync()
    assert engine.sync_status().is_auto_sync_running
    await scheduler.advance(299)
    assert calls == []
    await scheduler.advance(601)
    assert len(calls) == 3

    engine.stop_auto_sync()
    assert not engine.auto_sync_running
    await scheduler.advance(3600)
    assert len(calls) == 3


async def test_sync_status(engine, auth, store, clock):
    endpoint, _ = await _endpoint(engine, auth, "desk", "http://desk.local")
    engine.get_endpoint(endpoint.id).last_sync = clock.now()

    status = engine.sync_status()

    assert not status.is_auto_sync_enabled
    assert not status.is_auto_sync_running
    assert status.active_endpoints == 1
    assert status.last_sync_times == {endpoint.id: clock.now()}


async def test_adopted_state_cancels_local_countdown_at_once(store, auth, clock, scheduler, state_machine):
    engine = SyncEngine(store, auth, clock, scheduler, sessions=state_machine)
    await state_machine.start("writer")
    await scheduler.advance(300)
    await state_machine.request_switch("coder")

    assert await engine.merge_snapshot(_snapshot(state=_active("reviewer", 400)))

    assert state_machine.pending is None
    assert not state_machine.status().in_transition
    assert scheduler.pending == 0
    assert store.state.active_role_id == "reviewer"
    assert store.events[-1].type == EventType.CANCEL_TRANSITION
    assert store.events[-1].meta.reason == "state_replaced"


async def test_older_peer_state_keeps_local_countdown(store, auth, clock, scheduler, state_machine):
    engine = SyncEngine(store, auth, clock, scheduler, sessions=state_machine)
    await state_machine.start("writer")
    await scheduler.advance(300)
    await state_machine.request_switch("coder")

    assert not await engine.merge_snapshot(_snapshot(state=_active("reviewer", -100)))

    assert state_machine.pending is not None
    await scheduler.advance(30)
    assert store.state.active_role_id == "coder"
