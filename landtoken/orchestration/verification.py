from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from landtoken.backend.errors import BackendError, RequestTimeoutError
from landtoken.backend.types import VerificationResponse
from landtoken.common import guarded_call, log_event

from .types import VerificationOutcome, VerificationStatus, VerificationTask

OnVerified = Callable[[VerificationTask], Awaitable[None] | None]
OnFailed = Callable[[VerificationTask, str], Awaitable[None] | None]
SleepFn = Callable[[float], Awaitable[Any]]


def exhausted_reason(attempts: int) -> str:
    return f"Verification exhausted after {attempts} attempts; payment submitted but unconfirmed"


def timeout_reason(timeout_seconds: float) -> str:
    return f"Verification timed out after {timeout_seconds:g}s; payment submitted but unconfirmed"


class VerificationBackend(Protocol):
    async def verify_payment(
        self,
        *,
        transaction_ref: str,
        account_ref: str,
        expected_amount: float,
        timeout_seconds: float | None = None,
    ) -> VerificationResponse: ...


class PaymentVerificationPoller:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        backend: VerificationBackend,
        interval_seconds: float = 5.0,
        max_attempts: int = 12,
        timeout_seconds: float = 60.0,
        request_timeout_seconds: float | None = 12.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._backend = backend
        self._interval_seconds = max(0.0, interval_seconds)
        self._max_attempts = max(1, max_attempts)
        self._timeout_seconds = timeout_seconds
        self._request_timeout_seconds = request_timeout_seconds
        self._sleep = sleep
        self._loops: dict[str, tuple[VerificationTask, asyncio.Task[None]]] = {}
        self._finished: dict[str, VerificationTask] = {}

    @property
    def active_count(self) -> int:
        return len(self._loops)

    def get_status(self, transaction_ref: str) -> VerificationTask | None:
        entry = self._loops.get(transaction_ref)
        if entry is not None:
            return entry[0]
        return self._finished.get(transaction_ref)

    def start_verification(
        self,
        *,
        transaction_ref: str,
        account_ref: str,
        expected_amount: float,
        on_verified: OnVerified | None = None,
        on_failed: OnFailed | None = None,
    ) -> VerificationTask:
        if self.stop_verification(transaction_ref):
            log_event(
                self._logger,
                level="info",
                event="verification_replaced",
                message="Replacing active verification loop",
                transaction_ref=transaction_ref,
            )

        task = VerificationTask(
            transaction_ref=transaction_ref,
            account_ref=account_ref,
            expected_amount=expected_amount,
        )
        self._finished.pop(transaction_ref, None)
        runner = asyncio.create_task(
            self._run(task, on_verified, on_failed),
            name=f"verify-{transaction_ref}",
        )
        self._loops[transaction_ref] = (task, runner)
        runner.add_done_callback(lambda done, ref=transaction_ref: self._forget(ref, done))
        return task

    def stop_verification(self, transaction_ref: str) -> bool:
        entry = self._loops.pop(transaction_ref, None)
        if entry is None:
            return False
        _, runner = entry
        runner.cancel()
        return True

    async def stop_all(self) -> None:
        runners = [runner for _, runner in self._loops.values()]
        self._loops.clear()
        for runner in runners:
            runner.cancel()
        for runner in runners:
            with contextlib.suppress(asyncio.CancelledError):
                await runner

    async def join(self, transaction_ref: str) -> VerificationTask | None:
        entry = self._loops.get(transaction_ref)
        if entry is None:
            return self._finished.get(transaction_ref)
        task, runner = entry
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(runner)
        return task

    def _forget(self, transaction_ref: str, runner: asyncio.Task[None]) -> None:
        entry = self._loops.get(transaction_ref)
        if entry is not None and entry[1] is runner:
            del self._loops[transaction_ref]
            self._finished[transaction_ref] = entry[0]

    async def _run(
        self,
        task: VerificationTask,
        on_verified: OnVerified | None,
        on_failed: OnFailed | None,
    ) -> None:
        try:
            reason = await asyncio.wait_for(self._poll(task), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            reason = timeout_reason(self._timeout_seconds)
            task.status = VerificationStatus.FAILED
            task.outcome = VerificationOutcome.INCONCLUSIVE
            task.last_error = reason

        if task.status is VerificationStatus.VERIFIED:
            log_event(
                self._logger,
                level="info",
                event="payment_verified",
                message="Payment verified on ledger",
                transaction_ref=task.transaction_ref,
                attempts=task.attempts,
            )
            if on_verified is not None:
                await guarded_call(
                    lambda: on_verified(task),
                    logger=self._logger,
                    event="verification_callback_failed",
                    message="on_verified callback failed",
                    transaction_ref=task.transaction_ref,
                )
            return

        failure_reason = reason or task.last_error or exhausted_reason(task.attempts)
        log_event(
            self._logger,
            level="warning",
            event="payment_unconfirmed",
            message="Payment verification ended without confirmation",
            transaction_ref=task.transaction_ref,
            attempts=task.attempts,
            reason=failure_reason,
        )
        if on_failed is not None:
            await guarded_call(
                lambda: on_failed(task, failure_reason),
                logger=self._logger,
                event="verification_callback_failed",
                message="on_failed callback failed",
                transaction_ref=task.transaction_ref,
            )

    async def _poll(self, task: VerificationTask) -> str | None:
        for attempt in range(1, self._max_attempts + 1):
            task.attempts = attempt
            try:
                response = await self._backend.verify_payment(
                    transaction_ref=task.transaction_ref,
                    account_ref=task.account_ref,
                    expected_amount=task.expected_amount,
                    timeout_seconds=self._request_timeout_seconds,
                )
            except RequestTimeoutError:
                task.status = VerificationStatus.PENDING
                task.last_error = "verification request timed out"
            except BackendError as error:
                task.status = VerificationStatus.PENDING
                task.last_error = str(error)
                log_event(
                    self._logger,
                    level="warning",
                    event="verification_attempt_failed",
                    message="Verification request failed; will retry",
                    transaction_ref=task.transaction_ref,
                    attempt=attempt,
                    error=str(error),
                )
            except Exception as error:
                task.status = VerificationStatus.PENDING
                task.last_error = str(error) or type(error).__name__
                log_event(
                    self._logger,
                    level="exception",
                    event="verification_attempt_crashed",
                    message="Unexpected verification error; will retry",
                    transaction_ref=task.transaction_ref,
                    attempt=attempt,
                    error=task.last_error,
                )
            else:
                if response.success:
                    task.status = VerificationStatus.VERIFIED
                    task.verified_at = datetime.now(timezone.utc).isoformat()
                    task.payment = response.payment
                    task.last_error = None
                    return None
                if response.failed:
                    task.status = VerificationStatus.FAILED
                    task.outcome = VerificationOutcome.REJECTED
                    task.last_error = response.message or "Payment verification failed"
                    return task.last_error
                task.status = VerificationStatus.PENDING

            if attempt < self._max_attempts:
                await self._sleep(self._interval_seconds)

        task.status = VerificationStatus.FAILED
        task.outcome = VerificationOutcome.INCONCLUSIVE
        reason = exhausted_reason(task.attempts)
        task.last_error = reason
        return reason
