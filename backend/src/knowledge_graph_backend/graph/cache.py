"""Bounded TTL cache for community summaries."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from time import monotonic
from typing import Any, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


class SummaryCache(Generic[T]):
    """Size-bounded TTL cache with insertion-order eviction.

    Reads do not refresh an entry's position; when the cache is full the
    entry that was stored earliest is evicted. Storing an existing key
    counts as a fresh insertion.
    """

    def __init__(self, max_size: int = 100, ttl_seconds: float = 1800.0) -> None:
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._store: OrderedDict[Hashable, CacheEntry[T]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Optional[T]:
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None
        if monotonic() - entry.stored_at > self.ttl_seconds:
            self._store.pop(key, None)
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: Hashable, value: T) -> None:
        self._store.pop(key, None)
        while len(self._store) >= self.max_size:
            self._store.popitem(last=False)
        self._store[key] = CacheEntry(value=value, stored_at=monotonic())

    def has(self, key: Hashable) -> bool:
        entry = self._store.get(key)
        if entry is None:
            return False
        if monotonic() - entry.stored_at > self.ttl_seconds:
            self._store.pop(key, None)
            return False
        return True

    def delete(self, key: Hashable) -> bool:
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        self._store.clear()

    def items(self) -> list[tuple[Hashable, T]]:
        """Return unexpired entries in insertion order."""
        now = monotonic()
        expired = [key for key, entry in self._store.items() if now - entry.stored_at > self.ttl_seconds]
        for key in expired:
            self._store.pop(key, None)
        return [(key, entry.value) for key, entry in self._store.items()]

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._store),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
        }
