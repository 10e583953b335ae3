"""Store selection from settings."""

from ..config import Settings
from .base import KeyValueStore
from .memory import MemoryStore
from .postgres import PostgresStore
from .redis_store import RedisStore


def build_store(settings: Settings) -> KeyValueStore:
    """Instantiate the backend named by STORE_BACKEND (not yet initialized)."""
    if settings.store_backend == "redis":
        return RedisStore.from_settings(settings)
    if settings.store_backend == "postgres":
        return PostgresStore(settings.postgres_url, echo=settings.app_debug)
    return MemoryStore()
