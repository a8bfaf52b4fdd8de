"""Shared test fixtures for all test groups."""

import pytest

from factories import T0, make_store
from roleswitch.core.clock import VirtualClock
from roleswitch.core.scheduler import ManualScheduler
from roleswitch.db.store import MemoryStorage
from roleswitch.services.auth_service import AuthService
from roleswitch.services.session_service import RoleSessionStateMachine


@pytest.fixture
def clock():
    """Virtual clock pinned to T0."""
    return VirtualClock(T0)


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage):
    """Store with three roles and default timing (30s transition, 300s lock)."""
    return make_store(storage=storage)


@pytest.fixture
def state_machine(store, clock, scheduler):
    return RoleSessionStateMachine(store, clock, scheduler)


@pytest.fixture
def auth(store, clock):
    return AuthService(store, clock, tolerance_seconds=300)
