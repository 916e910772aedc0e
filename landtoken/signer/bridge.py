from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
from typing import Any, Callable

import aiohttp

from landtoken.common import guarded_call, log_event, wait_with_stop

from .errors import (
    SignerError,
    SignerInsufficientFundsError,
    SignerNotInstalledError,
    UserCancelledError,
)
from .types import (
    FeePaymentTransaction,
    SignerConnection,
    SignerEvent,
    SignerEventListener,
    SignerExecution,
)

CANCELLED_CODES = frozenset({"USER_REJECTED", "USER_CANCELLED", "REJECTED"})
INSUFFICIENT_FUNDS_CODES = frozenset({"INSUFFICIENT_PAYER_BALANCE", "INSUFFICIENT_FUNDS"})


def _signer_error(status: int, payload: dict[str, Any]) -> SignerError:
    code = str(payload.get("code") or "").upper()
    message = str(payload.get("error") or payload.get("message") or f"Signer bridge returned {status}")
    if code in CANCELLED_CODES:
        return UserCancelledError(message)
    if code in INSUFFICIENT_FUNDS_CODES:
        return SignerInsufficientFundsError(message)
    if code == "NOT_INSTALLED" or status == 404:
        return SignerNotInstalledError(message)
    return SignerError(message)


class HttpSignerBridge:
    """External signer reached through a local HTTP bridge.

    The bridge owns the wallet pairing and keys; this side only forwards
    connect/sign/execute requests and polls for session lifecycle events.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str,
        event_poll_seconds: float = 2.0,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self._logger = logger
        self._base_url = base_url.rstrip("/")
        self._event_poll_seconds = max(0.2, event_poll_seconds)
        self._request_timeout_seconds = request_timeout_seconds
        self._session: aiohttp.ClientSession | None = None
        self._session_id: str | None = None
        self._available = False
        self._listeners: list[SignerEventListener] = []
        self._events_task: asyncio.Task[None] | None = None
        self._events_stop = asyncio.Event()

    @property
    def is_available(self) -> bool:
        return self._available

    async def start(self) -> None:
        if self._session is None:
            timeout = (
                aiohttp.ClientTimeout(total=self._request_timeout_seconds)
                if self._request_timeout_seconds
                else aiohttp.ClientTimeout(total=None)
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        try:
            _, payload = await self._request("GET", "status")
        except SignerError:
            self._available = False
        else:
            self._available = bool(payload.get("available", True))

    async def close(self) -> None:
        await self._stop_event_loop()
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, path: str, *, json_body: Any = None) -> tuple[int, dict[str, Any]]:
        if self._session is None:
            raise SignerNotInstalledError("Signer bridge session is not started.")

        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with self._session.request(method, url, json=json_body) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {}
        except aiohttp.ClientConnectionError as error:
            raise SignerNotInstalledError(f"Signer bridge unreachable at {self._base_url}: {error}") from error

        if not isinstance(payload, dict):
            payload = {"result": payload}
        if status >= 400:
            raise _signer_error(status, payload)
        return status, payload

    async def connect(self, *, network: str) -> SignerConnection:
        _, payload = await self._request("POST", "connect", json_body={"network": network})
        account_ref = str(payload.get("accountId") or "").strip()
        self._session_id = str(payload["sessionId"]) if payload.get("sessionId") else None
        self._available = True
        self._start_event_loop()
        return SignerConnection(
            account_ref=account_ref,
            network=str(payload.get("network") or network),
            session_id=self._session_id,
        )

    async def disconnect(self) -> None:
        await self._stop_event_loop()
        session_id, self._session_id = self._session_id, None
        if session_id is None or self._session is None:
            return
        await guarded_call(
            lambda: self._request("POST", "disconnect", json_body={"sessionId": session_id}),
            logger=self._logger,
            event="signer_disconnect_failed",
            message="Signer bridge disconnect failed",
        )

    async def sign(self, payload: bytes) -> bytes:
        _, body = await self._request(
            "POST",
            "sign",
            json_body={
                "sessionId": self._session_id,
                "payload": base64.b64encode(payload).decode("ascii"),
            },
        )
        signature = body.get("signature")
        if not isinstance(signature, str):
            raise SignerError("Signer bridge returned no signature")
        return base64.b64decode(signature)

    async def execute_signed(self, transaction: FeePaymentTransaction) -> SignerExecution:
        _, body = await self._request(
            "POST",
            "execute",
            json_body={"sessionId": self._session_id, "transaction": transaction.to_dict()},
        )
        transaction_ref = body.get("transactionId")
        return SignerExecution(
            transaction_ref=str(transaction_ref) if transaction_ref else None,
            status=str(body.get("status") or "SUCCESS"),
        )

    def subscribe(self, listener: SignerEventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _start_event_loop(self) -> None:
        if self._events_task is not None and not self._events_task.done():
            return
        self._events_stop = asyncio.Event()
        self._events_task = asyncio.create_task(self._poll_events(self._events_stop))

    async def _stop_event_loop(self) -> None:
        task, self._events_task = self._events_task, None
        if task is None:
            return
        self._events_stop.set()
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _poll_events(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await wait_with_stop(stop_event, self._event_poll_seconds)
            if stop_event.is_set():
                return
            try:
                _, payload = await self._request("GET", f"events?sessionId={self._session_id or ''}")
            except (SignerError, aiohttp.ClientError, asyncio.TimeoutError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="signer_event_poll_failed",
                    message="Signer bridge event poll failed",
                    error=str(error),
                    error_type=type(error).__name__,
                )
                continue

            for raw_event in payload.get("events") or []:
                event_type = raw_event.get("type") if isinstance(raw_event, dict) else raw_event
                try:
                    event = SignerEvent(str(event_type))
                except ValueError:
                    continue
                await self._dispatch(event)

    async def _dispatch(self, event: SignerEvent) -> None:
        log_event(
            self._logger,
            level="info",
            event="signer_lifecycle_event",
            message="Signer reported a lifecycle event",
            signer_event=event.value,
        )
        for listener in list(self._listeners):
            await guarded_call(
                lambda listener=listener: listener(event),
                logger=self._logger,
                event="signer_listener_failed",
                message="Signer event listener failed",
                signer_event=event.value,
            )
