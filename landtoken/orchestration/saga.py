from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from landtoken.backend.client import BackendClient, ensure_write_succeeded
from landtoken.backend.types import (
    BalanceCheck,
    DocumentUpload,
    ExchangeRate,
    MintReceipt,
    UploadResult,
    WriteEnvelope,
)
from landtoken.common import guarded_call, log_event
from landtoken.signer.types import build_fee_payment

from .dedup import hold_operation
from .errors import (
    CriticalPartialFailureError,
    InsufficientFundsError,
    WalletConnectionError,
    WalletFailure,
)
from .keys import EXCHANGE_RATE_KEY, check_balance_key, parcel_key, parcel_write_prefixes, tokenize_key
from .progress import SagaProgress
from .retry import RetryExecutor
from .types import (
    OperationKind,
    PaymentReceipt,
    SagaCheckpoint,
    SagaStepId,
    TokenizationRequest,
    TokenizationResult,
    VerificationStatus,
    VerificationTask,
)
from .verification import OnFailed, OnVerified, PaymentVerificationPoller
from .wallet import WalletSessionManager

SleepFn = Callable[[float], Awaitable[Any]]


class ParcelBackend(Protocol):
    async def get_exchange_rate(self) -> ExchangeRate: ...

    async def check_balance(self, account_ref: str) -> BalanceCheck: ...

    async def create_parcel(self, parcel_data: dict[str, Any]) -> WriteEnvelope: ...

    async def upload_document(self, parcel_id: str, document: DocumentUpload) -> UploadResult: ...

    async def mint_parcel(
        self,
        *,
        parcel_id: str,
        account_ref: str,
        payment_ref: str | None = None,
    ) -> WriteEnvelope: ...


class AuditSink(Protocol):
    async def record_tokenization_run(self, *, run_id: str, status: str, payload: dict[str, Any]) -> None: ...


class TokenizationSaga:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        wallet: WalletSessionManager,
        backend: ParcelBackend,
        executor: RetryExecutor,
        poller: PaymentVerificationPoller,
        audit: AuditSink | None = None,
        post_payment_settle_seconds: float = 3.0,
        pre_mint_settle_seconds: float = 2.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._wallet = wallet
        self._backend = backend
        self._executor = executor
        self._poller = poller
        self._audit = audit
        self._post_payment_settle_seconds = max(0.0, post_payment_settle_seconds)
        self._pre_mint_settle_seconds = max(0.0, pre_mint_settle_seconds)
        self._sleep = sleep

    async def run(
        self,
        request: TokenizationRequest,
        *,
        progress: SagaProgress | None = None,
        on_verified: OnVerified | None = None,
        on_failed: OnFailed | None = None,
    ) -> TokenizationResult:
        return await self._guarded_run(
            request,
            progress=progress,
            checkpoint=None,
            on_verified=on_verified,
            on_failed=on_failed,
        )

    async def resume(
        self,
        request: TokenizationRequest,
        checkpoint: SagaCheckpoint,
        *,
        progress: SagaProgress | None = None,
        on_verified: OnVerified | None = None,
        on_failed: OnFailed | None = None,
    ) -> TokenizationResult:
        if checkpoint.operation_id != request.operation_id:
            raise ValueError(
                f"Checkpoint belongs to operation {checkpoint.operation_id}, not {request.operation_id}"
            )
        return await self._guarded_run(
            request,
            progress=progress,
            checkpoint=checkpoint,
            on_verified=on_verified,
            on_failed=on_failed,
        )

    async def _guarded_run(
        self,
        request: TokenizationRequest,
        *,
        progress: SagaProgress | None,
        checkpoint: SagaCheckpoint | None,
        on_verified: OnVerified | None,
        on_failed: OnFailed | None,
    ) -> TokenizationResult:
        tracker = progress or SagaProgress(logger=self._logger)
        try:
            async with hold_operation(self._executor.registry, tokenize_key(request.operation_id)):
                return await self._run_steps(
                    request,
                    tracker,
                    checkpoint=checkpoint,
                    on_verified=on_verified,
                    on_failed=on_failed,
                )
        finally:
            tracker.close()

    async def _run_steps(
        self,
        request: TokenizationRequest,
        progress: SagaProgress,
        *,
        checkpoint: SagaCheckpoint | None,
        on_verified: OnVerified | None,
        on_failed: OnFailed | None,
    ) -> TokenizationResult:
        log_event(
            self._logger,
            level="info",
            event="tokenization_started",
            message="Tokenization run started",
            operation_id=request.operation_id,
            resumed=checkpoint is not None,
            documents=len(request.documents),
        )

        account_ref = await self._ensure_wallet(progress)

        if checkpoint is None:
            payment = await self._process_payment(account_ref, progress)
            self._start_verification(payment, on_verified=on_verified, on_failed=on_failed)
            if self._post_payment_settle_seconds:
                await self._sleep(self._post_payment_settle_seconds)
        else:
            payment = checkpoint.payment
            if payment.account_ref != account_ref:
                await progress.begin(SagaStepId.PAYMENT_PROCESSING)
                message = (
                    f"Checkpoint payment was made from {payment.account_ref}, "
                    f"but the connected wallet is {account_ref}"
                )
                await progress.fail(SagaStepId.PAYMENT_PROCESSING, message)
                raise ValueError(message)
            await progress.begin(SagaStepId.PAYMENT_PROCESSING, "Reusing submitted payment")
            await progress.complete(
                SagaStepId.PAYMENT_PROCESSING,
                f"Reusing submitted payment {payment.transaction_ref}",
            )
            if not payment.verified:
                self._start_verification(payment, on_verified=on_verified, on_failed=on_failed)

        parcel = checkpoint.parcel if checkpoint is not None else None
        if parcel is None:
            parcel = await self._create_parcel(request, payment, progress)
        else:
            await progress.begin(SagaStepId.PARCEL_CREATION, "Reusing registered parcel")
            await progress.complete(SagaStepId.PARCEL_CREATION, f"Parcel registered: {parcel.get('id')}")
        parcel_id = str(parcel["id"])

        previous_uploads = checkpoint.upload_results if checkpoint is not None else ()
        upload_results = await self._upload_documents(parcel_id, request.documents, previous_uploads, progress)

        if self._pre_mint_settle_seconds:
            await self._sleep(self._pre_mint_settle_seconds)
        mint = await self._mint(request, payment, parcel, upload_results, progress)

        await self._executor.invalidate(*parcel_write_prefixes(parcel_id))

        result = TokenizationResult(
            parcel_record=parcel,
            payment=payment,
            mint=mint,
            upload_results=upload_results,
        )
        log_event(
            self._logger,
            level="info",
            event="tokenization_completed",
            message="Tokenization run completed",
            operation_id=request.operation_id,
            parcel_id=parcel_id,
            payment_ref=payment.transaction_ref,
            token_id=mint.token_id,
            mint_ref=mint.transaction_ref,
            upload_failures=sum(1 for item in upload_results if not item.succeeded),
        )
        await self._record_audit(request.operation_id, "completed", result.to_dict())
        return result

    async def _ensure_wallet(self, progress: SagaProgress) -> str:
        await progress.begin(SagaStepId.WALLET_CONNECTION, "Checking wallet connection")
        if not self._wallet.is_connected:
            await progress.detail(SagaStepId.WALLET_CONNECTION, "Waiting for wallet approval")
            outcome = await self._wallet.connect()
            if not outcome.success:
                await progress.fail(SagaStepId.WALLET_CONNECTION, outcome.message)
                raise outcome.error or WalletConnectionError(WalletFailure.CONNECTION_FAILED)

        account_ref = self._wallet.account_ref
        if account_ref is None:
            message = "Wallet disconnected before the run could start"
            await progress.fail(SagaStepId.WALLET_CONNECTION, message)
            raise RuntimeError(message)
        await progress.complete(SagaStepId.WALLET_CONNECTION, f"Wallet connected: {account_ref}")
        return account_ref

    async def _process_payment(self, account_ref: str, progress: SagaProgress) -> PaymentReceipt:
        step = SagaStepId.PAYMENT_PROCESSING
        await progress.begin(step, "Fetching fee quote")
        try:
            quote = await self._executor.execute(
                self._backend.get_exchange_rate,
                operation_key=EXCHANGE_RATE_KEY,
                kind=OperationKind.READ,
                decode=lambda payload: ExchangeRate(**payload),
            )

            await progress.detail(step, f"Checking balance for {quote.mint_fee_hbar:g} HBAR fee")
            balance = await self._executor.execute(
                lambda: self._backend.check_balance(account_ref),
                operation_key=check_balance_key(account_ref),
                kind=OperationKind.READ,
                use_cache=False,
            )
            if not balance.can_pay:
                raise InsufficientFundsError(
                    balance=balance.balance,
                    required=balance.required or quote.mint_fee_hbar,
                    account_ref=account_ref,
                )

            transaction = build_fee_payment(payer=account_ref, quote=quote)
            await progress.detail(step, "Waiting for wallet to sign the payment")
            execution = await self._wallet.execute_signed(transaction)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            await progress.fail(step, str(error))
            raise

        payment = PaymentReceipt(
            transaction_ref=execution.transaction_ref or transaction.transaction_id,
            account_ref=account_ref,
            amount_hbar=transaction.amount_hbar,
            amount_usd=transaction.amount_usd,
            amount_tinybars=transaction.amount_tinybars,
        )
        log_event(
            self._logger,
            level="info",
            event="payment_submitted",
            message="Fee payment submitted to ledger",
            payment_ref=payment.transaction_ref,
            amount_hbar=payment.amount_hbar,
            treasury=transaction.treasury,
        )
        await progress.complete(step, f"Payment submitted: {payment.transaction_ref}")
        return payment

    def _start_verification(
        self,
        payment: PaymentReceipt,
        *,
        on_verified: OnVerified | None,
        on_failed: OnFailed | None,
    ) -> None:
        async def handle_verified(task: VerificationTask) -> None:
            payment.verified = True
            payment.verification_status = VerificationStatus.VERIFIED
            payment.verification_error = None
            if on_verified is not None:
                await guarded_call(
                    lambda: on_verified(task),
                    logger=self._logger,
                    event="verification_listener_failed",
                    message="Caller on_verified listener failed",
                    payment_ref=payment.transaction_ref,
                )

        async def handle_failed(task: VerificationTask, reason: str) -> None:
            payment.verification_status = VerificationStatus.FAILED
            payment.verification_error = reason
            payment.verification_outcome = task.outcome
            if on_failed is not None:
                await guarded_call(
                    lambda: on_failed(task, reason),
                    logger=self._logger,
                    event="verification_listener_failed",
                    message="Caller on_failed listener failed",
                    payment_ref=payment.transaction_ref,
                )

        self._poller.start_verification(
            transaction_ref=payment.transaction_ref,
            account_ref=payment.account_ref,
            expected_amount=payment.amount_hbar,
            on_verified=handle_verified,
            on_failed=handle_failed,
        )

    async def _create_parcel(
        self,
        request: TokenizationRequest,
        payment: PaymentReceipt,
        progress: SagaProgress,
    ) -> dict[str, Any]:
        step = SagaStepId.PARCEL_CREATION
        await progress.begin(step, "Registering parcel")
        parcel_data = {**request.parcel_data, "paymentTransactionId": payment.transaction_ref}
        try:
            envelope = await self._executor.execute(
                lambda: self._backend.create_parcel(parcel_data),
                operation_key=f"create-parcel-{request.operation_id}",
                invalidates=parcel_write_prefixes(),
            )
            ensure_write_succeeded(envelope, context="parcel creation")
        except asyncio.CancelledError:
            raise
        except Exception as error:
            await progress.fail(step, str(error))
            raise await self._critical_failure(
                step=step,
                request=request,
                payment=payment,
                parcel=None,
                upload_results=(),
                cause=error,
            ) from error

        parcel = dict(envelope.payload)
        parcel.setdefault("id", envelope.resource_id)
        await progress.complete(step, f"Parcel registered: {parcel['id']}")
        return parcel

    async def _upload_documents(
        self,
        parcel_id: str,
        documents: tuple[DocumentUpload, ...],
        previous_results: tuple[UploadResult, ...],
        progress: SagaProgress,
    ) -> tuple[UploadResult, ...]:
        step = SagaStepId.DOCUMENT_UPLOAD
        already_uploaded = {result.name: result for result in previous_results if result.succeeded}
        pending = [document for document in documents if document.name not in already_uploaded]
        await progress.begin(step, f"Uploading {len(pending)} document(s)")

        results: list[UploadResult] = list(already_uploaded.values())
        for index, document in enumerate(pending, start=1):
            await progress.detail(step, f"Uploading {document.name} ({index}/{len(pending)})")
            try:
                result = await self._executor.execute(
                    lambda document=document: self._backend.upload_document(parcel_id, document),
                    operation_key=f"upload-{parcel_id}-{document.name}",
                    invalidates=(parcel_key(parcel_id),),
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="document_upload_failed",
                    message="Document upload failed; continuing",
                    parcel_id=parcel_id,
                    document=document.name,
                    error=str(error),
                )
                result = UploadResult(name=document.name, status="error", error=str(error))
            results.append(result)

        failed = sum(1 for result in results if not result.succeeded)
        detail = f"Uploaded {len(results) - failed}/{len(results)} document(s)"
        if failed:
            detail += f", {failed} failed"
        await progress.complete(step, detail)
        return tuple(results)

    async def _mint(
        self,
        request: TokenizationRequest,
        payment: PaymentReceipt,
        parcel: dict[str, Any],
        upload_results: tuple[UploadResult, ...],
        progress: SagaProgress,
    ) -> MintReceipt:
        step = SagaStepId.NFT_MINTING
        parcel_id = str(parcel["id"])
        await progress.begin(step, "Minting parcel token")
        try:
            envelope = await self._executor.execute(
                lambda: self._backend.mint_parcel(
                    parcel_id=parcel_id,
                    account_ref=payment.account_ref,
                    payment_ref=payment.transaction_ref,
                ),
                operation_key=f"mint-{parcel_id}",
                invalidates=parcel_write_prefixes(parcel_id),
            )
            ensure_write_succeeded(envelope, context="minting")
            mint = BackendClient.mint_receipt(envelope)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            await progress.fail(step, str(error))
            raise await self._critical_failure(
                step=step,
                request=request,
                payment=payment,
                parcel=parcel,
                upload_results=upload_results,
                cause=error,
            ) from error

        serial = f" #{mint.serial_number}" if mint.serial_number is not None else ""
        await progress.complete(step, f"Token minted: {mint.token_id}{serial}")
        return mint

    async def _critical_failure(
        self,
        *,
        step: SagaStepId,
        request: TokenizationRequest,
        payment: PaymentReceipt,
        parcel: dict[str, Any] | None,
        upload_results: tuple[UploadResult, ...],
        cause: BaseException,
    ) -> CriticalPartialFailureError:
        checkpoint = SagaCheckpoint(
            operation_id=request.operation_id,
            payment=payment,
            parcel=parcel,
            upload_results=upload_results,
        )
        error = CriticalPartialFailureError(
            step=step,
            payment_ref=payment.transaction_ref,
            checkpoint=checkpoint,
            cause=cause,
        )
        log_event(
            self._logger,
            level="error",
            event="tokenization_partial_failure",
            message="Payment submitted but a dependent step failed",
            operation_id=request.operation_id,
            step=step.value,
            payment_ref=payment.transaction_ref,
            parcel_id=checkpoint.parcel_id,
            error=str(cause),
        )
        await self._record_audit(request.operation_id, "critical_partial_failure", error.to_dict())
        return error

    async def _record_audit(self, run_id: str, status: str, payload: dict[str, Any]) -> None:
        if self._audit is None:
            return
        audit = self._audit
        await guarded_call(
            lambda: audit.record_tokenization_run(run_id=run_id, status=status, payload=payload),
            logger=self._logger,
            event="tokenization_audit_failed",
            message="Failed to record tokenization audit entry",
            operation_id=run_id,
            status=status,
        )
