from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from landtoken.backend.client import ensure_write_succeeded
from landtoken.backend.errors import (
    BackendConflictError,
    BackendUnreachableError,
    RequestTimeoutError,
)
from landtoken.backend.types import WriteEnvelope
from landtoken.common import guarded_call, log_event
from landtoken.signer.errors import SignerNotInstalledError, UserCancelledError
from landtoken.signer.types import (
    ExternalSigner,
    FeePaymentTransaction,
    SignerEvent,
    SignerExecution,
    is_valid_account_ref,
)

from .errors import (
    WALLET_FAILURE_MESSAGES,
    RetriesExhaustedError,
    WalletConnectionError,
    WalletFailure,
    WalletNotConnectedError,
)
from .types import WalletSession, WalletState


class WalletLinkBackend(Protocol):
    async def link_wallet(self, account_ref: str) -> WriteEnvelope: ...


@dataclass(slots=True, frozen=True)
class ConnectionOutcome:
    success: bool
    account_ref: str | None = None
    error: WalletConnectionError | None = None

    @property
    def failure(self) -> WalletFailure | None:
        return self.error.failure if self.error is not None else None

    @property
    def message(self) -> str:
        if self.error is not None:
            return str(self.error)
        return f"Wallet connected: {self.account_ref}"


def classify_wallet_error(error: BaseException) -> WalletConnectionError:
    if isinstance(error, WalletConnectionError):
        return error
    if isinstance(error, RetriesExhaustedError):
        return classify_wallet_error(error.last_error)
    if isinstance(error, UserCancelledError):
        return WalletConnectionError(WalletFailure.USER_CANCELLED)
    if isinstance(error, SignerNotInstalledError):
        return WalletConnectionError(WalletFailure.SIGNER_NOT_INSTALLED)
    if isinstance(error, BackendConflictError):
        details = dict(error.details)
        other_account = details.get("connectedToEmail") or details.get("connectedToDisplayName")
        message = WALLET_FAILURE_MESSAGES[WalletFailure.BACKEND_CONFLICT]
        if other_account:
            message = f"This wallet is already connected to account: {other_account}"
        details.setdefault("code", error.code)
        return WalletConnectionError(WalletFailure.BACKEND_CONFLICT, message, details=details)
    if isinstance(error, (BackendUnreachableError, RequestTimeoutError)):
        return WalletConnectionError(WalletFailure.BACKEND_UNREACHABLE)
    return WalletConnectionError(WalletFailure.CONNECTION_FAILED, details={"cause": str(error)})


class WalletSessionManager:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        signer: ExternalSigner,
        backend: WalletLinkBackend,
        network: str,
    ) -> None:
        self._logger = logger
        self._signer = signer
        self._backend = backend
        self._network = network
        self._state = WalletState.DISCONNECTED
        self._account_ref: str | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._connect_task: asyncio.Task[ConnectionOutcome] | None = None

    @property
    def session(self) -> WalletSession:
        return WalletSession(
            state=self._state,
            is_available=self._signer.is_available,
            account_ref=self._account_ref if self._state is WalletState.CONNECTED else None,
            network=self._network,
        )

    @property
    def state(self) -> WalletState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is WalletState.CONNECTED

    @property
    def account_ref(self) -> str | None:
        return self._account_ref if self.is_connected else None

    async def connect(self) -> ConnectionOutcome:
        if self.is_connected:
            return ConnectionOutcome(success=True, account_ref=self._account_ref)

        task = self._connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._connect_once())
            self._connect_task = task
            task.add_done_callback(self._clear_connect_task)
        return await asyncio.shield(task)

    def _clear_connect_task(self, task: asyncio.Task[Any]) -> None:
        if self._connect_task is task:
            self._connect_task = None

    async def _connect_once(self) -> ConnectionOutcome:
        self._state = WalletState.CONNECTING
        log_event(
            self._logger,
            level="info",
            event="wallet_connect_started",
            message="Opening external signer connection",
            network=self._network,
        )

        try:
            connection = await self._signer.connect(network=self._network)
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as error:
            return await self._fail(error, stage="signer")

        self._subscribe()
        if not is_valid_account_ref(connection.account_ref):
            return await self._fail(
                WalletConnectionError(
                    WalletFailure.CONNECTION_FAILED,
                    details={"account_ref": connection.account_ref},
                ),
                stage="signer",
            )

        self._account_ref = connection.account_ref
        self._state = WalletState.PENDING_BACKEND_SYNC

        try:
            ensure_write_succeeded(await self._backend.link_wallet(connection.account_ref), context="wallet link")
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as error:
            return await self._fail(error, stage="backend_sync")

        if self._state is not WalletState.PENDING_BACKEND_SYNC:
            return await self._fail(
                WalletConnectionError(
                    WalletFailure.CONNECTION_FAILED,
                    "Wallet session ended while linking the account",
                ),
                stage="backend_sync",
            )

        self._state = WalletState.CONNECTED
        log_event(
            self._logger,
            level="info",
            event="wallet_connected",
            message="Wallet connected and linked to user",
            account_ref=connection.account_ref,
            network=connection.network,
        )
        return ConnectionOutcome(success=True, account_ref=connection.account_ref)

    async def _fail(self, error: BaseException, *, stage: str) -> ConnectionOutcome:
        classified = classify_wallet_error(error)
        await self._teardown()
        log_event(
            self._logger,
            level="info" if classified.failure is WalletFailure.USER_CANCELLED else "warning",
            event="wallet_connect_failed",
            message="Wallet connection failed",
            stage=stage,
            failure=classified.failure.value,
            error=str(error),
        )
        return ConnectionOutcome(success=False, error=classified)

    async def disconnect(self) -> None:
        was_active = self._state is not WalletState.DISCONNECTED
        await self._teardown()
        if was_active:
            log_event(
                self._logger,
                level="info",
                event="wallet_disconnected",
                message="Wallet disconnected",
            )

    async def _teardown(self) -> None:
        self._state = WalletState.DISCONNECTED
        self._account_ref = None
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        await guarded_call(
            self._signer.disconnect,
            logger=self._logger,
            event="signer_disconnect_failed",
            message="External signer disconnect failed",
        )

    def _subscribe(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._signer.subscribe(self._on_signer_event)

    async def _on_signer_event(self, event: SignerEvent) -> None:
        log_event(
            self._logger,
            level="info",
            event="wallet_signer_event",
            message="Signer lifecycle event forces wallet disconnect",
            signer_event=event.value,
        )
        await self.disconnect()

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise WalletNotConnectedError()

    async def sign(self, payload: bytes) -> bytes:
        self._require_connected()
        return await self._signer.sign(payload)

    async def execute_signed(self, transaction: FeePaymentTransaction) -> SignerExecution:
        self._require_connected()
        if transaction.payer != self._account_ref:
            raise WalletNotConnectedError(
                f"Transaction payer {transaction.payer} does not match connected account {self._account_ref}"
            )
        return await self._signer.execute_signed(transaction)
