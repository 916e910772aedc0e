from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from landtoken.backend.errors import BackendRejectedError, RateLimitedError, RequestTimeoutError
from landtoken.backend.types import ExchangeRate
from landtoken.orchestration import (
    DuplicateOperationError,
    InMemoryOperationRegistry,
    InMemoryResponseCache,
    OperationKind,
    RetriesExhaustedError,
    RetryExecutor,
    RetryPolicy,
)


class RetryExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.registry = InMemoryOperationRegistry()
        self.cache = InMemoryResponseCache(ttl_seconds=30)
        self.sleep = AsyncMock()
        self.executor = RetryExecutor(
            logger=logging.getLogger("test.retry"),
            registry=self.registry,
            cache=self.cache,
            policy=RetryPolicy(max_attempts=3, initial_delay_seconds=1.0, max_delay_seconds=30.0, jitter_ratio=0.0),
            sleep=self.sleep,
        )

    async def test_retryable_failure_is_attempted_max_times_then_exhausted(self) -> None:
        failure = RateLimitedError("Too many requests")
        action = AsyncMock(side_effect=failure)

        with self.assertRaises(RetriesExhaustedError) as ctx:
            await self.executor.execute(action, operation_key="create-parcel-op-1")

        self.assertEqual(action.await_count, 3)
        self.assertIs(ctx.exception.last_error, failure)
        self.assertIs(ctx.exception.__cause__, failure)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(self.sleep.await_count, 2)
        self.assertFalse(self.registry.is_held("create-parcel-op-1"))

    async def test_non_retryable_failure_is_attempted_once(self) -> None:
        action = AsyncMock(side_effect=BackendRejectedError("Bad request", status=400))

        with self.assertRaises(BackendRejectedError):
            await self.executor.execute(action, operation_key="delist-p-1")

        action.assert_awaited_once()
        self.sleep.assert_not_awaited()
        self.assertFalse(self.registry.is_held("delist-p-1"))

    async def test_transient_failure_recovers_on_next_attempt(self) -> None:
        action = AsyncMock(side_effect=[RequestTimeoutError("timed out"), "ok"])

        result = await self.executor.execute(action)

        self.assertEqual(result, "ok")
        self.assertEqual(action.await_count, 2)

    async def test_backoff_doubles_and_caps_at_max_delay(self) -> None:
        action = AsyncMock(side_effect=RateLimitedError("slow down"))
        policy = RetryPolicy(max_attempts=4, initial_delay_seconds=1.0, max_delay_seconds=3.0, jitter_ratio=0.0)

        with self.assertRaises(RetriesExhaustedError):
            await self.executor.execute(action, policy=policy)

        delays = [call.args[0] for call in self.sleep.await_args_list]
        self.assertEqual(delays, [1.0, 2.0, 3.0])

    async def test_jitter_stays_within_ratio(self) -> None:
        policy = RetryPolicy(max_attempts=3, initial_delay_seconds=2.0, max_delay_seconds=30.0, jitter_ratio=0.3)
        for retry_index in range(4):
            base = policy.base_delay(retry_index)
            delay = policy.delay_for(retry_index)
            self.assertGreaterEqual(delay, base)
            self.assertLessEqual(delay, base * 1.3)

    async def test_duplicate_operation_key_fails_fast(self) -> None:
        self.assertTrue(await self.registry.try_acquire("mint-p-1"))
        action = AsyncMock(return_value="minted")

        with self.assertRaises(DuplicateOperationError):
            await self.executor.execute(action, operation_key="mint-p-1")

        action.assert_not_awaited()
        self.assertTrue(self.registry.is_held("mint-p-1"))

    async def test_read_operation_is_served_from_cache(self) -> None:
        action = AsyncMock(return_value=[{"id": "p-1"}])

        first = await self.executor.execute(action, operation_key="list-parcels-{}", kind=OperationKind.READ)
        second = await self.executor.execute(action, operation_key="list-parcels-{}", kind=OperationKind.READ)

        self.assertEqual(first, second)
        action.assert_awaited_once()

    async def test_read_with_cache_disabled_always_calls_through(self) -> None:
        action = AsyncMock(return_value={"balance": 1})

        await self.executor.execute(action, operation_key="check-balance-0.0.1", kind=OperationKind.READ, use_cache=False)
        await self.executor.execute(action, operation_key="check-balance-0.0.1", kind=OperationKind.READ, use_cache=False)

        self.assertEqual(action.await_count, 2)
        self.assertIsNone(await self.cache.get("check-balance-0.0.1"))

    async def test_write_invalidates_affected_prefixes(self) -> None:
        await self.cache.set("list-parcels-{}", [{"id": "p-1"}])
        await self.cache.set("list-parcels-{\"status\":\"LISTED\"}", [])
        await self.cache.set("exchange-rate", {"rate": 1})

        await self.executor.execute(
            AsyncMock(return_value="created"),
            operation_key="create-parcel-op-2",
            invalidates=("list-parcels-",),
        )

        self.assertIsNone(await self.cache.get("list-parcels-{}"))
        self.assertIsNone(await self.cache.get("list-parcels-{\"status\":\"LISTED\"}"))
        self.assertIsNotNone(await self.cache.get("exchange-rate"))

    async def test_failed_read_is_not_cached(self) -> None:
        action = AsyncMock(side_effect=[BackendRejectedError("nope", status=500), ["fresh"]])

        with self.assertRaises(BackendRejectedError):
            await self.executor.execute(action, operation_key="parcel-p-9", kind=OperationKind.READ)
        self.assertIsNone(await self.cache.get("parcel-p-9"))

        result = await self.executor.execute(action, operation_key="parcel-p-9", kind=OperationKind.READ)
        self.assertEqual(result, ["fresh"])

    async def test_dataclass_result_is_cached_as_plain_data_and_decoded_on_hit(self) -> None:
        quote = ExchangeRate(
            usd_to_hbar=10.0,
            mint_fee_usd=5.0,
            mint_fee_hbar=50.0,
            network="testnet",
            treasury_account="0.0.900",
        )
        action = AsyncMock(return_value=quote)

        def decode(payload: dict) -> ExchangeRate:
            return ExchangeRate(**payload)

        first = await self.executor.execute(action, operation_key="exchange-rate", kind=OperationKind.READ, decode=decode)
        second = await self.executor.execute(action, operation_key="exchange-rate", kind=OperationKind.READ, decode=decode)

        self.assertIs(first, quote)
        self.assertEqual(second, quote)
        action.assert_awaited_once()
        entry = await self.cache.get("exchange-rate")
        self.assertEqual(entry.payload["treasury_account"], "0.0.900")

    async def test_undecodable_cache_entry_calls_through(self) -> None:
        await self.cache.set("exchange-rate", "ExchangeRate(usd_to_hbar=10.0)")
        fresh = ExchangeRate(
            usd_to_hbar=10.0,
            mint_fee_usd=5.0,
            mint_fee_hbar=50.0,
            network="testnet",
            treasury_account="0.0.900",
        )
        action = AsyncMock(return_value=fresh)

        result = await self.executor.execute(
            action,
            operation_key="exchange-rate",
            kind=OperationKind.READ,
            decode=lambda payload: ExchangeRate(**payload),
        )

        self.assertIs(result, fresh)
        action.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
