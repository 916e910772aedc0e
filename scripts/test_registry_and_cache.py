from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from landtoken.orchestration import (
    DuplicateOperationError,
    InMemoryOperationRegistry,
    InMemoryResponseCache,
    RedisOperationRegistry,
    RedisResponseCache,
    hold_operation,
)


class OperationRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_acquire_yields_exactly_one_winner(self) -> None:
        registry = InMemoryOperationRegistry()

        results = await asyncio.gather(
            registry.try_acquire("create-parcel-op-1"),
            registry.try_acquire("create-parcel-op-1"),
        )

        self.assertEqual(sorted(results), [False, True])
        await registry.release("create-parcel-op-1")
        self.assertTrue(await registry.try_acquire("create-parcel-op-1"))

    async def test_hold_releases_on_exception(self) -> None:
        registry = InMemoryOperationRegistry()

        with self.assertRaises(ValueError):
            async with hold_operation(registry, "tokenize-op-1"):
                self.assertTrue(registry.is_held("tokenize-op-1"))
                raise ValueError("boom")

        self.assertFalse(registry.is_held("tokenize-op-1"))

    async def test_hold_rejects_second_holder(self) -> None:
        registry = InMemoryOperationRegistry()

        async with hold_operation(registry, "tokenize-op-2"):
            with self.assertRaises(DuplicateOperationError):
                async with hold_operation(registry, "tokenize-op-2"):
                    pass
            self.assertTrue(registry.is_held("tokenize-op-2"))

        self.assertEqual(registry.held_keys, frozenset())

    async def test_redis_registry_releases_with_its_own_token(self) -> None:
        store = MagicMock()
        store.acquire_operation_guard = AsyncMock(return_value=True)
        store.release_operation_guard = AsyncMock(return_value=True)
        registry = RedisOperationRegistry(store=store, logger=logging.getLogger("test.registry"))

        self.assertTrue(await registry.try_acquire("mint-p-1"))
        self.assertFalse(await registry.try_acquire("mint-p-1"))
        await registry.release("mint-p-1")

        token = store.acquire_operation_guard.await_args.kwargs["token"]
        store.release_operation_guard.assert_awaited_once_with(key="mint-p-1", token=token)
        self.assertFalse(registry.is_held("mint-p-1"))

    async def test_redis_registry_reports_guard_held_elsewhere(self) -> None:
        store = MagicMock()
        store.acquire_operation_guard = AsyncMock(return_value=False)
        store.release_operation_guard = AsyncMock(return_value=True)
        registry = RedisOperationRegistry(store=store, logger=logging.getLogger("test.registry"))

        self.assertFalse(await registry.try_acquire("mint-p-1"))
        await registry.release("mint-p-1")

        store.release_operation_guard.assert_not_awaited()

    async def test_redis_registry_renews_guard_while_held(self) -> None:
        store = MagicMock()
        store.acquire_operation_guard = AsyncMock(return_value=True)
        store.release_operation_guard = AsyncMock(return_value=True)
        store.renew_operation_guard = AsyncMock(return_value=True)
        intervals: list[float] = []

        async def fast_sleep(seconds: float) -> None:
            intervals.append(seconds)
            await asyncio.sleep(0)

        registry = RedisOperationRegistry(
            store=store,
            logger=logging.getLogger("test.registry"),
            renew_interval_seconds=100.0,
            sleep=fast_sleep,
        )

        async with hold_operation(registry, "tokenize-op-1"):
            while store.renew_operation_guard.await_count < 3:
                await asyncio.sleep(0)

        token = store.acquire_operation_guard.await_args.kwargs["token"]
        store.renew_operation_guard.assert_awaited_with(key="tokenize-op-1", token=token)
        self.assertEqual(set(intervals), {100.0})

        renewals = store.renew_operation_guard.await_count
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertEqual(store.renew_operation_guard.await_count, renewals)
        self.assertFalse(registry.is_held("tokenize-op-1"))

    async def test_redis_registry_stops_renewing_lost_guard(self) -> None:
        store = MagicMock()
        store.acquire_operation_guard = AsyncMock(return_value=True)
        store.release_operation_guard = AsyncMock(return_value=False)
        store.renew_operation_guard = AsyncMock(side_effect=[ConnectionError("redis down"), False, True])

        async def fast_sleep(_seconds: float) -> None:
            await asyncio.sleep(0)

        registry = RedisOperationRegistry(
            store=store,
            logger=logging.getLogger("test.registry"),
            sleep=fast_sleep,
        )

        self.assertTrue(await registry.try_acquire("mint-p-1"))
        heartbeat = registry._heartbeats["mint-p-1"]
        await asyncio.wait_for(heartbeat, timeout=1.0)

        self.assertEqual(store.renew_operation_guard.await_count, 2)
        await registry.release("mint-p-1")
        store.release_operation_guard.assert_awaited_once()


class ResponseCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_entry_expires_at_ttl_boundary(self) -> None:
        now = [100.0]
        cache = InMemoryResponseCache(ttl_seconds=30.0, clock=lambda: now[0])
        await cache.set("parcel-p-1", {"id": "p-1"})

        now[0] = 129.9
        entry = await cache.get("parcel-p-1")
        self.assertIsNotNone(entry)
        self.assertEqual(entry.payload, {"id": "p-1"})

        now[0] = 130.0
        self.assertIsNone(await cache.get("parcel-p-1"))
        self.assertEqual(len(cache), 0)

    async def test_invalidate_prefix_only_removes_matching_keys(self) -> None:
        cache = InMemoryResponseCache(ttl_seconds=30.0)
        await cache.set("list-parcels-{}", [])
        await cache.set("my-parcels-0.0.1", [])
        await cache.set("parcel-p-1", {})

        removed = await cache.invalidate_prefix("list-parcels-")

        self.assertEqual(removed, 1)
        self.assertIsNone(await cache.get("list-parcels-{}"))
        self.assertIsNotNone(await cache.get("my-parcels-0.0.1"))
        self.assertIsNotNone(await cache.get("parcel-p-1"))

    async def test_redis_cache_drops_stale_entry_on_read(self) -> None:
        store = MagicMock()
        store.get_cache_entry = AsyncMock(return_value=({"id": "p-1"}, 1_000.0))
        store.delete_cache_entry = AsyncMock()
        cache = RedisResponseCache(store=store, ttl_seconds=30.0, clock=lambda: 1_031.0)

        self.assertIsNone(await cache.get("parcel-p-1"))
        store.delete_cache_entry.assert_awaited_once_with("parcel-p-1")

    async def test_redis_cache_returns_fresh_entry(self) -> None:
        store = MagicMock()
        store.get_cache_entry = AsyncMock(return_value=([1, 2], 1_000.0))
        store.put_cache_entry = AsyncMock()
        cache = RedisResponseCache(store=store, ttl_seconds=30.0, clock=lambda: 1_010.0)

        entry = await cache.get("list-parcels-{}")
        await cache.set("list-parcels-{}", [3])

        self.assertEqual(entry.payload, [1, 2])
        store.put_cache_entry.assert_awaited_once_with(
            "list-parcels-{}",
            [3],
            written_at=1_010.0,
            ttl_seconds=30.0,
        )


if __name__ == "__main__":
    unittest.main()
