from __future__ import annotations

import time
from typing import Any, Callable, Protocol

from .types import CacheEntry


class ResponseCache(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, payload: Any) -> None: ...

    async def invalidate_prefix(self, prefix: str) -> int: ...


class CacheEntryStore(Protocol):
    async def get_cache_entry(self, key: str) -> tuple[Any, float] | None: ...

    async def put_cache_entry(self, key: str, payload: Any, *, written_at: float, ttl_seconds: float) -> None: ...

    async def delete_cache_entry(self, key: str) -> None: ...

    async def delete_cache_prefix(self, prefix: str) -> int: ...


class InMemoryResponseCache:
    def __init__(self, *, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    async def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.written_at >= self._ttl_seconds:
            del self._entries[key]
            return None
        return entry

    async def set(self, key: str, payload: Any) -> None:
        self._entries[key] = CacheEntry(key=key, payload=payload, written_at=self._clock())

    async def invalidate_prefix(self, prefix: str) -> int:
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class RedisResponseCache:
    """Cache entries kept in Redis; TTL is still checked on read against written_at."""

    def __init__(
        self,
        *,
        store: CacheEntryStore,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    async def get(self, key: str) -> CacheEntry | None:
        stored = await self._store.get_cache_entry(key)
        if stored is None:
            return None
        payload, written_at = stored
        if self._clock() - written_at >= self._ttl_seconds:
            await self._store.delete_cache_entry(key)
            return None
        return CacheEntry(key=key, payload=payload, written_at=written_at)

    async def set(self, key: str, payload: Any) -> None:
        await self._store.put_cache_entry(
            key,
            payload,
            written_at=self._clock(),
            ttl_seconds=self._ttl_seconds,
        )

    async def invalidate_prefix(self, prefix: str) -> int:
        return await self._store.delete_cache_prefix(prefix)
