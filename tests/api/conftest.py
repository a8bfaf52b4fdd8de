"""API-specific test fixtures."""

import pytest
from fastapi.testclient import TestClient

from factories import T0, make_store
from roleswitch.core.config import Settings
from roleswitch.main import create_app
from roleswitch.schemas.models import ApiKey, Permission

ADMIN_KEY = "A" * 32
WRITER_KEY = "W" * 32
READER_KEY = "R" * 32


def make_key(key_id: str, key: str, permissions: list[Permission]) -> ApiKey:
    return ApiKey(
        id=key_id,
        name=key_id,
        key=key,
        secret=key_id.upper() * 8,
        permissions=permissions,
        created_at=T0,
    )


@pytest.fixture
def api_settings() -> Settings:
    return Settings(_env_file=None, require_signed_sync=True)


@pytest.fixture
def api_store():
    """Store with three roles plus admin, writer and reader keys."""
    store = make_store()
    store.data.api_keys = [
        make_key("admin", ADMIN_KEY, [Permission.ADMIN]),
        make_key("writer", WRITER_KEY, [Permission.READ, Permission.WRITE]),
        make_key("reader", READER_KEY, [Permission.READ]),
    ]
    return store


@pytest.fixture
def app(api_settings, api_store, clock, scheduler):
    return create_app(settings=api_settings, store=api_store, clock=clock, scheduler=scheduler)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def writer_headers():
    return {"Authorization": f"Bearer {WRITER_KEY}"}


@pytest.fixture
def reader_headers():
    return {"X-API-Key": READER_KEY}
