"""
Process-memory caches shared by the token, symbol and quote services.

These are plain objects built once by the service container and injected, so
tests can hand each service a fresh instance. Everything held here can be
rebuilt from the database.
"""
import math
import threading
import time
from typing import Any, Dict, Generic, Hashable, Optional, TypeVar

from cachetools import TLRUCache, TTLCache

V = TypeVar("V")

DEFAULT_MAXSIZE = 4096


class ExpiringCache(Generic[V]):
    """Fixed-TTL cache (quotes, stream ports) on top of cachetools.TTLCache."""

    def __init__(self, ttl: float, maxsize: int = DEFAULT_MAXSIZE, clock=time.monotonic):
        self.ttl = ttl
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)
        self._lock = threading.RLock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._entries[key] = value

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


def _entry_expiry(_key, entry, now):
    _, ttl = entry
    return math.inf if ttl is None else now + ttl


class VariableExpiryCache(Generic[V]):
    """
    Cache whose entries each carry their own TTL, on top of cachetools.TLRUCache.

    Access tokens use it: each one is cached until its own expiry minus the
    safety buffer. A TTL of None keeps the entry until it is evicted.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE, clock=time.monotonic):
        self._entries: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=clock)
        self._lock = threading.RLock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
        return None if entry is None else entry[0]

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = (value, ttl)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


class PermanentCache(Generic[V]):
    """Cache for values that never change once known (ticker -> symbol ID)."""

    def __init__(self):
        self._entries: Dict[Hashable, V] = {}
        self._lock = threading.RLock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._entries[key] = value

    def update(self, values: Dict[Hashable, V]) -> None:
        with self._lock:
            self._entries.update(values)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def snapshot(self) -> Dict[Hashable, Any]:
        with self._lock:
            return dict(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
