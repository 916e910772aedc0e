from __future__ import annotations

import json
import math
from typing import Any

from landtoken.common import log_event

from .helpers import dumps_compact as _dumps_compact
from .helpers import escape_glob as _escape_glob


class RedisStorageOps:
    @staticmethod
    def _prefixed(prefix: str, key: str) -> str:
        return f"{prefix}:{key}"

    async def acquire_operation_guard(self, *, key: str, token: str) -> bool:
        redis_client = self._require_redis()
        guard_key = self._prefixed(self.settings.operation_guard_prefix, key)

        acquired = await redis_client.set(
            guard_key,
            token,
            ex=max(1, self.settings.operation_guard_ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def release_operation_guard(self, *, key: str, token: str) -> bool:
        redis_client = self._require_redis()
        guard_key = self._prefixed(self.settings.operation_guard_prefix, key)
        deleted = await redis_client.eval(
            """
            if redis.call('get', KEYS[1]) == ARGV[1] then
              return redis.call('del', KEYS[1])
            end
            return 0
            """,
            1,
            guard_key,
            token,
        )
        return bool(deleted)

    async def renew_operation_guard(self, *, key: str, token: str) -> bool:
        redis_client = self._require_redis()
        guard_key = self._prefixed(self.settings.operation_guard_prefix, key)
        renewed = await redis_client.eval(
            """
            if redis.call('get', KEYS[1]) == ARGV[1] then
              return redis.call('expire', KEYS[1], ARGV[2])
            end
            return 0
            """,
            1,
            guard_key,
            token,
            max(1, self.settings.operation_guard_ttl_seconds),
        )
        return bool(renewed)

    async def get_cache_entry(self, key: str) -> tuple[Any, float] | None:
        redis_client = self._require_redis()
        raw = await redis_client.get(self._prefixed(self.settings.cache_prefix, key))
        if raw is None:
            return None

        try:
            decoded = json.loads(raw)
            return decoded["payload"], float(decoded["written_at"])
        except (ValueError, KeyError, TypeError):
            log_event(
                self._logger,
                level="warning",
                event="cache_entry_corrupt",
                message="Dropping unreadable cache entry",
                cache_key=key,
            )
            await self.delete_cache_entry(key)
            return None

    async def put_cache_entry(
        self,
        key: str,
        payload: Any,
        *,
        written_at: float,
        ttl_seconds: float,
    ) -> None:
        redis_client = self._require_redis()
        await redis_client.set(
            self._prefixed(self.settings.cache_prefix, key),
            _dumps_compact({"payload": payload, "written_at": written_at}),
            ex=max(1, math.ceil(ttl_seconds)) + 1,
        )

    async def delete_cache_entry(self, key: str) -> None:
        redis_client = self._require_redis()
        await redis_client.delete(self._prefixed(self.settings.cache_prefix, key))

    async def delete_cache_prefix(self, prefix: str) -> int:
        redis_client = self._require_redis()
        pattern = f"{_escape_glob(self._prefixed(self.settings.cache_prefix, prefix))}*"

        keys = [key async for key in redis_client.scan_iter(match=pattern, count=200)]
        if not keys:
            return 0
        return int(await redis_client.delete(*keys))
