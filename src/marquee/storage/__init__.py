"""Credential storage backends."""

from marquee.config import Settings
from marquee.storage.base import SecureStorage
from marquee.storage.memory import InMemorySecureStorage
from marquee.storage.sqlite import SQLiteSecureStorage


def create_storage(settings: Settings) -> SecureStorage:
    """Create the storage backend selected by ``settings.storage_backend``."""
    if settings.storage_backend == "memory":
        return InMemorySecureStorage()
    if settings.storage_backend == "sqlite":
        return SQLiteSecureStorage(settings.storage_path)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


__all__ = [
    "SecureStorage",
    "InMemorySecureStorage",
    "SQLiteSecureStorage",
    "create_storage",
]
