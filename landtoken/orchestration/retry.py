from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import asdict, is_dataclass
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from landtoken.common import guarded_call, log_event

from .cache import ResponseCache
from .dedup import OperationRegistry, hold_operation
from .errors import RetriesExhaustedError
from .types import OperationKind, RetryPolicy

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, asyncio.TimeoutError):
        return True
    return bool(getattr(error, "retryable", False))


def _cacheable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


class RetryExecutor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        registry: OperationRegistry,
        cache: ResponseCache,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._logger = logger
        self._registry = registry
        self._cache = cache
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        action: Callable[[], Awaitable[T]],
        *,
        operation_key: str | None = None,
        kind: OperationKind = OperationKind.WRITE,
        policy: RetryPolicy | None = None,
        use_cache: bool = True,
        invalidates: Iterable[str] = (),
        decode: Callable[[Any], T] | None = None,
    ) -> T:
        active_policy = policy or self._policy
        cacheable = operation_key is not None and kind is OperationKind.READ and use_cache

        if cacheable:
            entry = await guarded_call(
                lambda: self._cache.get(operation_key),
                logger=self._logger,
                event="cache_read_failed",
                message="Response cache read failed; calling through",
                operation_key=operation_key,
            )
            if entry is not None:
                log_event(
                    self._logger,
                    level="debug",
                    event="cache_hit",
                    message="Serving cached response",
                    operation_key=operation_key,
                )
                if decode is None:
                    return entry.payload
                try:
                    return decode(entry.payload)
                except (TypeError, ValueError, KeyError) as error:
                    log_event(
                        self._logger,
                        level="warning",
                        event="cache_entry_undecodable",
                        message="Cached response could not be decoded; calling through",
                        operation_key=operation_key,
                        error=str(error),
                    )

        scope = hold_operation(self._registry, operation_key) if operation_key else contextlib.nullcontext()
        async with scope:
            result = await self._attempt(action, policy=active_policy, operation_key=operation_key)
            if cacheable:
                await guarded_call(
                    lambda: self._cache.set(operation_key, _cacheable(result)),
                    logger=self._logger,
                    event="cache_write_failed",
                    message="Response cache write failed",
                    operation_key=operation_key,
                )
            await self.invalidate(*invalidates)
        return result

    async def invalidate(self, *prefixes: str) -> None:
        for prefix in prefixes:
            removed = await guarded_call(
                lambda prefix=prefix: self._cache.invalidate_prefix(prefix),
                logger=self._logger,
                event="cache_invalidate_failed",
                message="Response cache invalidation failed",
                prefix=prefix,
            )
            if removed:
                log_event(
                    self._logger,
                    level="debug",
                    event="cache_invalidated",
                    message="Invalidated cached responses",
                    prefix=prefix,
                    removed=removed,
                )

    async def _attempt(
        self,
        action: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy,
        operation_key: str | None,
    ) -> T:
        last_error: BaseException | None = None

        for attempt in range(policy.max_attempts):
            if attempt > 0:
                delay = policy.delay_for(attempt - 1, self._rng)
                retry_after = getattr(last_error, "retry_after_seconds", None)
                if isinstance(retry_after, (int, float)) and retry_after > delay:
                    delay = min(float(retry_after), policy.max_delay_seconds)
                log_event(
                    self._logger,
                    level="warning",
                    event="operation_retry_scheduled",
                    message="Retrying operation after transient failure",
                    operation_key=operation_key,
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    delay_seconds=round(delay, 3),
                    error=str(last_error),
                )
                await self._sleep(delay)

            try:
                return await action()
            except asyncio.CancelledError:
                raise
            except Exception as error:
                if not is_retryable(error):
                    raise
                last_error = error

        if last_error is None:
            raise RuntimeError("Retry loop finished without an attempt")
        log_event(
            self._logger,
            level="error",
            event="operation_retries_exhausted",
            message="Operation failed after all retry attempts",
            operation_key=operation_key,
            attempts=policy.max_attempts,
            error=str(last_error),
        )
        raise RetriesExhaustedError(
            f"Operation failed after {policy.max_attempts} attempts: {last_error}",
            last_error=last_error,
            attempts=policy.max_attempts,
        ) from last_error
