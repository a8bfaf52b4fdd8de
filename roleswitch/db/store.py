"""Persisted-state store: one in-memory blob, loaded and saved wholesale.

The store is an explicit object handed to the services (it lives on
``app.state.store`` in the API). Every mutation runs inside
``transaction()``, which holds an ``asyncio.Lock`` for the whole
read-modify-save so a state transition and a sync merge never interleave.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import structlog

from roleswitch.core.exceptions import NotFoundError
from roleswitch.domain.sessions import derive_sessions
from roleswitch.schemas.models import (
    DeviceSettings,
    Event,
    PersistedData,
    Role,
    RoleSwitchState,
    Session,
)

logger = structlog.get_logger(__name__)


class StorageBackend(Protocol):
    async def load(self) -> dict[str, Any] | None: ...

    async def save(self, payload: dict[str, Any]) -> None: ...


class JsonFileStorage:
    """Stores the blob as one JSON document, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        return json.loads(text)

    async def save(self, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, payload)

    def _write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)


class MemoryStorage:
    """Keeps the last saved payload in memory (tests, ephemeral peers)."""

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self.payload = payload
        self.save_count = 0

    async def load(self) -> dict[str, Any] | None:
        return self.payload

    async def save(self, payload: dict[str, Any]) -> None:
        self.payload = payload
        self.save_count += 1


class RoleSwitchStore:
    """Owns {roles, events, state, settings, apiKeys, syncEndpoints, notes}."""

    def __init__(self, data: PersistedData, storage: StorageBackend) -> None:
        self.data = data
        self.storage = storage
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        storage: StorageBackend,
        defaults: DeviceSettings | None = None,
    ) -> RoleSwitchStore:
        """Load the blob, or start empty with ``defaults`` as device settings."""
        payload = await storage.load()
        if payload:
            data = PersistedData.model_validate(payload)
            logger.info(
                "store_loaded",
                roles=len(data.roles),
                events=len(data.events),
                api_keys=len(data.api_keys),
                sync_endpoints=len(data.sync_endpoints),
            )
        else:
            data = PersistedData(settings=defaults or DeviceSettings())
            logger.info("store_initialized_empty")
        return cls(data, storage)

    @property
    def in_transaction(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[PersistedData, None]:
        """Critical section for a mutation; saves the blob on clean exit.

        If the body raises, nothing is saved. Callers validate before they
        mutate, so a raised error leaves the blob untouched.
        """
        async with self._lock:
            yield self.data
            await self.save()

    async def save(self) -> None:
        await self.storage.save(self.data.model_dump(mode="json", by_alias=True))

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def append_event(self, event: Event) -> Event:
        """Append an immutable event. Call from inside ``transaction()``."""
        self.data.events.append(event)
        return event

    @property
    def events(self) -> list[Event]:
        return list(self.data.events)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def state(self) -> RoleSwitchState:
        return self.data.state

    @property
    def settings(self) -> DeviceSettings:
        return self.data.settings

    def find_role(self, role_id: str | None) -> Role | None:
        if role_id is None:
            return None
        return next((r for r in self.data.roles if r.id == role_id), None)

    def get_role(self, role_id: str) -> Role:
        role = self.find_role(role_id)
        if role is None:
            raise NotFoundError("Role", role_id)
        return role

    def derive_sessions(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Session]:
        return derive_sessions(self.data.events, start, end, notes=self.data.notes)
