"""Key-value cache used for reference lookups during mapping."""

import time
from collections.abc import Callable
from typing import Any

ENTITY_LOOKUP_TTL = 600
BULK_MAP_TTL = 3600
SWEEP_INTERVAL = 60


class MemoryCache:
    """Process-local TTL cache.

    Entries expire on access; writes also sweep out every expired entry at
    most once per ``sweep_interval`` seconds, so keys that are never read
    again do not accumulate. The cache is an optimization only: a miss
    always falls through to the database.
    """

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = SWEEP_INTERVAL
    ) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return default
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired()
        self._entries[key] = (now + ttl, value)

    def purge_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries dropped.
        """
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        return len(expired)

    def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def exists(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def remember(self, key: str, ttl: float, factory: Callable[[], Any]) -> Any:
        """Return the cached value or compute, store and return it.

        ``None`` results are not cached so a missing reference is looked up
        again on the next call.
        """
        sentinel = object()
        value = self.get(key, sentinel)
        if value is not sentinel:
            return value
        value = factory()
        if value is not None:
            self.set(key, value, ttl)
        return value
