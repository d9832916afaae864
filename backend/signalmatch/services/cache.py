"""Read-through cache for entity-name lookups.

WHAT:
    Small cache component with an explicit TTL and key scheme, injected into
    services through `signalmatch.deps.get_name_cache`.

WHY:
    Name maps are rebuilt from snapshot tables and are not correctness
    critical, so a short-lived per-process cache is enough. Tests swap in
    `NullNameCache` so every call reads the database.

KEY SCHEME:
    names:<store_id>        -> NameMaps for the store
"""

import threading
from typing import Any, Callable, Optional

from cachetools import TTLCache


def names_key(store_id: str) -> str:
    return f"names:{store_id}"


class NameCache:
    """Interface for caches used by the entity-name lookup."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def invalidate(self, key: str) -> None:
        raise NotImplementedError

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value)
        return value


class TTLNameCache(NameCache):
    """cachetools.TTLCache guarded by a lock (sync endpoints run in a threadpool)."""

    def __init__(self, maxsize: int = 256, ttl: int = 1800):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class NullNameCache(NameCache):
    """Cache that never stores anything."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any) -> None:
        return None

    def invalidate(self, key: str) -> None:
        return None
