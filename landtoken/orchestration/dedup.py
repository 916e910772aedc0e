from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from landtoken.common import log_event

from .errors import DuplicateOperationError


class OperationRegistry(Protocol):
    async def try_acquire(self, key: str) -> bool: ...

    async def release(self, key: str) -> None: ...

    def is_held(self, key: str) -> bool: ...


class OperationGuardStore(Protocol):
    async def acquire_operation_guard(self, *, key: str, token: str) -> bool: ...

    async def release_operation_guard(self, *, key: str, token: str) -> bool: ...

    async def renew_operation_guard(self, *, key: str, token: str) -> bool: ...


class InMemoryOperationRegistry:
    def __init__(self) -> None:
        self._held: set[str] = set()

    async def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    async def release(self, key: str) -> None:
        self._held.discard(key)

    def is_held(self, key: str) -> bool:
        return key in self._held

    @property
    def held_keys(self) -> frozenset[str]:
        return frozenset(self._held)


class RedisOperationRegistry:
    """Operation registry shared across processes through Redis guards.

    Each acquisition stores a random token so a release never deletes a guard
    that expired and was re-acquired by another holder. While a key is held a
    heartbeat task keeps extending the guard TTL.
    """

    def __init__(
        self,
        *,
        store: OperationGuardStore,
        logger: logging.Logger,
        renew_interval_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._logger = logger
        self._renew_interval_seconds = max(0.1, renew_interval_seconds)
        self._sleep = sleep
        self._tokens: dict[str, str] = {}
        self._heartbeats: dict[str, asyncio.Task[None]] = {}

    async def try_acquire(self, key: str) -> bool:
        if key in self._tokens:
            return False
        token = uuid.uuid4().hex
        self._tokens[key] = token
        try:
            acquired = await self._store.acquire_operation_guard(key=key, token=token)
        except BaseException:
            self._tokens.pop(key, None)
            raise
        if not acquired:
            self._tokens.pop(key, None)
            return False
        self._heartbeats[key] = asyncio.create_task(self._heartbeat(key, token), name=f"guard-{key}")
        return True

    async def _heartbeat(self, key: str, token: str) -> None:
        while self._tokens.get(key) == token:
            await self._sleep(self._renew_interval_seconds)
            if self._tokens.get(key) != token:
                return
            try:
                renewed = await self._store.renew_operation_guard(key=key, token=token)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="operation_guard_renew_failed",
                    message="Operation guard renewal failed; will retry",
                    operation_key=key,
                    error=str(error),
                )
                continue
            if not renewed:
                log_event(
                    self._logger,
                    level="error",
                    event="operation_guard_lost",
                    message="Operation guard expired or was taken over while held",
                    operation_key=key,
                )
                return

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        heartbeat = self._heartbeats.pop(key, None)
        if heartbeat is not None:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        if token is None:
            return
        released = await self._store.release_operation_guard(key=key, token=token)
        if not released:
            log_event(
                self._logger,
                level="warning",
                event="operation_guard_release_missed",
                message="Operation guard was already gone on release",
                operation_key=key,
            )

    def is_held(self, key: str) -> bool:
        return key in self._tokens


@contextlib.asynccontextmanager
async def hold_operation(registry: OperationRegistry, key: str) -> AsyncIterator[str]:
    if not await registry.try_acquire(key):
        raise DuplicateOperationError(key)
    try:
        yield key
    finally:
        await registry.release(key)
