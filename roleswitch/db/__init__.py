"""Persistence package: the in-memory store and its storage backends."""

from roleswitch.db.store import JsonFileStorage, MemoryStorage, RoleSwitchStore, StorageBackend

__all__ = [
    "JsonFileStorage",
    "MemoryStorage",
    "RoleSwitchStore",
    "StorageBackend",
]
