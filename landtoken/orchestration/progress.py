from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable

from landtoken.common import guarded_call

from .types import SAGA_STEP_ORDER, SagaStep, SagaStepId, StepStatus, StepUpdate

StepListener = Callable[[StepUpdate], Awaitable[None] | None]

_ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.PROCESSING}),
    StepStatus.PROCESSING: frozenset({StepStatus.PROCESSING, StepStatus.COMPLETED, StepStatus.ERROR}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.ERROR: frozenset(),
}


class SagaProgress:
    """Ordered step-state tracker and event stream for one saga run.

    Subscribers created before the run receive every update in the order
    it was published; the stream ends when the run finishes.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("landtoken")
        self._steps: dict[SagaStepId, SagaStep] = {step_id: SagaStep(id=step_id) for step_id in SAGA_STEP_ORDER}
        self._queues: list[asyncio.Queue[StepUpdate | None]] = []
        self._listeners: list[StepListener] = []
        self._closed = False

    def step(self, step_id: SagaStepId) -> SagaStep:
        return self._steps[step_id]

    def subscribe(self) -> AsyncIterator[StepUpdate]:
        queue: asyncio.Queue[StepUpdate | None] = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        else:
            self._queues.append(queue)
        return self._drain(queue)

    def add_listener(self, listener: StepListener) -> None:
        self._listeners.append(listener)

    async def _drain(self, queue: asyncio.Queue[StepUpdate | None]) -> AsyncIterator[StepUpdate]:
        while True:
            update = await queue.get()
            if update is None:
                return
            yield update

    async def begin(self, step_id: SagaStepId, detail: str = "") -> None:
        self._check_predecessors(step_id)
        await self._transition(step_id, StepStatus.PROCESSING, detail=detail)

    async def detail(self, step_id: SagaStepId, detail: str) -> None:
        await self._transition(step_id, StepStatus.PROCESSING, detail=detail)

    async def complete(self, step_id: SagaStepId, detail: str = "") -> None:
        await self._transition(step_id, StepStatus.COMPLETED, detail=detail)

    async def fail(self, step_id: SagaStepId, error_message: str) -> None:
        await self._transition(step_id, StepStatus.ERROR, error=error_message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)
        self._queues.clear()

    def snapshot(self) -> list[dict[str, object]]:
        return [
            {
                "id": step.id.value,
                "status": step.status.value,
                "detail": step.detail,
                "error": step.error_message,
            }
            for step in self._steps.values()
        ]

    def _check_predecessors(self, step_id: SagaStepId) -> None:
        for earlier in SAGA_STEP_ORDER[: SAGA_STEP_ORDER.index(step_id)]:
            if self._steps[earlier].status is not StepStatus.COMPLETED:
                raise RuntimeError(f"Cannot start {step_id.value} before {earlier.value} has completed")

    async def _transition(
        self,
        step_id: SagaStepId,
        status: StepStatus,
        *,
        detail: str = "",
        error: str | None = None,
    ) -> None:
        step = self._steps[step_id]
        if status not in _ALLOWED_TRANSITIONS[step.status]:
            raise RuntimeError(f"Invalid step transition for {step_id.value}: {step.status.value} -> {status.value}")

        step.status = status
        if detail:
            step.detail = detail
        if error is not None:
            step.error_message = error

        update = StepUpdate(step=step_id, status=status, detail=step.detail, error=error)
        for queue in self._queues:
            queue.put_nowait(update)
        for listener in list(self._listeners):
            await guarded_call(
                lambda listener=listener: listener(update),
                logger=self._logger,
                event="step_listener_failed",
                message="Step update listener failed",
                step=step_id.value,
            )
