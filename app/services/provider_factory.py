from __future__ import annotations

from functools import lru_cache

from app.config import settings
from app.services.memory_remote_store import InMemoryRemoteStore
from app.services.remote_store import RemoteStore
from app.services.sql_remote_store import SqlRemoteStore


@lru_cache(maxsize=1)
def get_remote_store() -> RemoteStore:
    provider = settings.remote_store.strip().lower()
    if provider == 'memory':
        return InMemoryRemoteStore()
    return SqlRemoteStore()
