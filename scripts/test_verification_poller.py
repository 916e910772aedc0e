from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from landtoken.backend.errors import BackendUnreachableError, RequestTimeoutError
from landtoken.backend.types import VerificationResponse
from landtoken.orchestration import (
    PaymentVerificationPoller,
    VerificationOutcome,
    VerificationStatus,
    VerificationTask,
)

TX_REF = "0.0.123@456.0"
PENDING = VerificationResponse(success=False, pending=True, message="Transaction not yet confirmed")
VERIFIED = VerificationResponse(success=True, pending=False, message="Payment verified", payment={"amount": 50})


class PaymentVerificationPollerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = MagicMock()
        self.sleep = AsyncMock()
        self.verified: list[VerificationTask] = []
        self.failures: list[str] = []
        self.poller = PaymentVerificationPoller(
            logger=logging.getLogger("test.poller"),
            backend=self.backend,
            interval_seconds=5.0,
            max_attempts=12,
            timeout_seconds=5.0,
            sleep=self.sleep,
        )

    async def asyncTearDown(self) -> None:
        await self.poller.stop_all()

    def _start(self) -> VerificationTask:
        return self.poller.start_verification(
            transaction_ref=TX_REF,
            account_ref="0.0.123",
            expected_amount=50.0,
            on_verified=self.verified.append,
            on_failed=lambda _task, reason: self.failures.append(reason),
        )

    async def test_pending_then_success_verifies_once_and_stops(self) -> None:
        self.backend.verify_payment = AsyncMock(side_effect=[PENDING, PENDING, PENDING, VERIFIED])

        self._start()
        task = await self.poller.join(TX_REF)
        await asyncio.sleep(0)

        self.assertEqual(task.status, VerificationStatus.VERIFIED)
        self.assertEqual(task.attempts, 4)
        self.assertIsNotNone(task.verified_at)
        self.assertEqual(len(self.verified), 1)
        self.assertEqual(self.failures, [])
        self.assertEqual(self.backend.verify_payment.await_count, 4)
        self.assertEqual(self.sleep.await_count, 3)
        self.assertEqual(self.poller.active_count, 0)
        self.assertIs(self.poller.get_status(TX_REF), task)

    async def test_exhausted_attempts_fail_then_restart_begins_at_attempt_one(self) -> None:
        self.backend.verify_payment = AsyncMock(return_value=PENDING)

        self._start()
        task = await self.poller.join(TX_REF)

        self.assertEqual(task.status, VerificationStatus.FAILED)
        self.assertEqual(task.attempts, 12)
        self.assertEqual(self.backend.verify_payment.await_count, 12)
        self.assertEqual(len(self.failures), 1)
        self.assertIn("exhausted", self.failures[0])
        self.assertEqual(task.outcome, VerificationOutcome.INCONCLUSIVE)
        self.assertEqual(self.verified, [])

        self.backend.verify_payment = AsyncMock(return_value=VERIFIED)
        restarted = self._start()
        self.assertEqual(restarted.status, VerificationStatus.VERIFYING)
        final = await self.poller.join(TX_REF)

        self.assertIsNot(final, task)
        self.assertEqual(final.attempts, 1)
        self.assertEqual(final.status, VerificationStatus.VERIFIED)
        self.assertIsNone(final.outcome)

    async def test_backend_hard_failure_is_terminal(self) -> None:
        self.backend.verify_payment = AsyncMock(
            return_value=VerificationResponse(success=False, pending=False, message="Payment amount mismatch")
        )

        self._start()
        task = await self.poller.join(TX_REF)

        self.assertEqual(task.status, VerificationStatus.FAILED)
        self.assertEqual(task.attempts, 1)
        self.assertEqual(self.failures, ["Payment amount mismatch"])
        self.assertEqual(task.outcome, VerificationOutcome.REJECTED)

    async def test_request_timeout_and_transport_errors_count_as_pending(self) -> None:
        self.backend.verify_payment = AsyncMock(
            side_effect=[RequestTimeoutError("timed out"), BackendUnreachableError("refused"), VERIFIED]
        )

        self._start()
        task = await self.poller.join(TX_REF)

        self.assertEqual(task.status, VerificationStatus.VERIFIED)
        self.assertEqual(task.attempts, 3)
        self.assertEqual(self.failures, [])

    async def test_unexpected_error_counts_as_attempt_and_polling_continues(self) -> None:
        self.backend.verify_payment = AsyncMock(
            side_effect=[aiohttp.ClientPayloadError("truncated body"), RuntimeError("decoder bug"), VERIFIED]
        )

        self._start()
        task = await self.poller.join(TX_REF)

        self.assertEqual(task.status, VerificationStatus.VERIFIED)
        self.assertEqual(task.attempts, 3)
        self.assertEqual(len(self.verified), 1)
        self.assertEqual(self.failures, [])

    async def test_persistent_unexpected_errors_end_with_on_failed(self) -> None:
        self.backend.verify_payment = AsyncMock(side_effect=aiohttp.ClientPayloadError("truncated body"))

        self._start()
        task = await self.poller.join(TX_REF)

        self.assertEqual(task.status, VerificationStatus.FAILED)
        self.assertEqual(task.outcome, VerificationOutcome.INCONCLUSIVE)
        self.assertEqual(task.attempts, 12)
        self.assertEqual(len(self.failures), 1)
        self.assertEqual(self.verified, [])

    async def test_wall_clock_timeout_stops_polling(self) -> None:
        self.backend.verify_payment = AsyncMock(return_value=PENDING)
        poller = PaymentVerificationPoller(
            logger=logging.getLogger("test.poller"),
            backend=self.backend,
            interval_seconds=0.01,
            max_attempts=10_000,
            timeout_seconds=0.05,
        )
        failures: list[str] = []

        poller.start_verification(
            transaction_ref=TX_REF,
            account_ref="0.0.123",
            expected_amount=50.0,
            on_failed=lambda _task, reason: failures.append(reason),
        )
        task = await poller.join(TX_REF)

        self.assertEqual(task.status, VerificationStatus.FAILED)
        self.assertEqual(len(failures), 1)
        self.assertIn("timed out", failures[0])
        self.assertEqual(task.outcome, VerificationOutcome.INCONCLUSIVE)
        self.assertLess(task.attempts, 10_000)

    async def test_new_request_for_same_ref_replaces_active_loop(self) -> None:
        blocked = asyncio.Event()
        calls = 0

        async def verify(**_kwargs: object) -> VerificationResponse:
            nonlocal calls
            calls += 1
            if calls == 1:
                await blocked.wait()
            return VERIFIED

        self.backend.verify_payment = AsyncMock(side_effect=verify)

        first = self._start()
        while calls == 0:
            await asyncio.sleep(0)
        second = self._start()
        final = await self.poller.join(TX_REF)

        self.assertIs(final, second)
        self.assertEqual(final.status, VerificationStatus.VERIFIED)
        self.assertNotEqual(first.status, VerificationStatus.VERIFIED)
        self.assertEqual(len(self.verified), 1)
        self.assertEqual(self.poller.active_count, 0)

    async def test_stop_verification_cancels_without_callbacks(self) -> None:
        self.backend.verify_payment = AsyncMock(return_value=PENDING)

        async def long_sleep(_seconds: float) -> None:
            await asyncio.sleep(3600)

        self.sleep.side_effect = long_sleep

        self._start()
        await asyncio.sleep(0)
        self.assertTrue(self.poller.stop_verification(TX_REF))
        self.assertFalse(self.poller.stop_verification(TX_REF))
        await asyncio.sleep(0)

        self.assertEqual(self.poller.active_count, 0)
        self.assertEqual(self.failures, [])
        self.assertEqual(self.verified, [])


if __name__ == "__main__":
    unittest.main()
