from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from landtoken.backend import BackendClient, DocumentUpload
from landtoken.common import guarded_call, log_event, wait_with_stop
from landtoken.orchestration import (
    InMemoryOperationRegistry,
    InMemoryResponseCache,
    OperationRegistry,
    ParcelCatalog,
    PaymentVerificationPoller,
    RedisOperationRegistry,
    RedisResponseCache,
    ResponseCache,
    RetryExecutor,
    RetryPolicy,
    SagaProgress,
    StepUpdate,
    TokenizationRequest,
    TokenizationSaga,
    WalletSessionManager,
)
from landtoken.signer import HttpSignerBridge
from landtoken.storage import StorageGateway, StorageSettings

from .settings import AppSettings

BOOTSTRAP_ATTEMPTS = 3
BOOTSTRAP_BACKOFF_SECONDS = 2.0


@dataclass(slots=True)
class Services:
    backend: BackendClient
    signer: HttpSignerBridge
    storage: StorageGateway | None
    executor: RetryExecutor
    wallet: WalletSessionManager
    poller: PaymentVerificationPoller
    saga: TokenizationSaga
    catalog: ParcelCatalog


def build_services(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage_settings: StorageSettings,
) -> Services:
    storage: StorageGateway | None = None
    if app_settings.uses_redis or app_settings.audit_enabled:
        storage = StorageGateway(
            storage_settings,
            logger,
            use_redis=app_settings.uses_redis,
            use_firestore=app_settings.audit_enabled,
        )

    registry: OperationRegistry
    if app_settings.operation_registry_backend == "redis" and storage is not None:
        registry = RedisOperationRegistry(
            store=storage,
            logger=logger,
            renew_interval_seconds=max(1.0, storage_settings.operation_guard_ttl_seconds / 3),
        )
    else:
        registry = InMemoryOperationRegistry()

    cache: ResponseCache
    if app_settings.cache_backend == "redis" and storage is not None:
        cache = RedisResponseCache(store=storage, ttl_seconds=app_settings.cache_ttl_seconds)
    else:
        cache = InMemoryResponseCache(ttl_seconds=app_settings.cache_ttl_seconds)

    backend = BackendClient(
        logger=logger,
        base_url=app_settings.api_base_url,
        token=app_settings.api_token,
        timeout_seconds=app_settings.api_request_timeout_seconds,
    )
    signer = HttpSignerBridge(
        logger=logger,
        base_url=app_settings.signer_bridge_url,
        event_poll_seconds=app_settings.signer_event_poll_seconds,
    )
    executor = RetryExecutor(
        logger=logger,
        registry=registry,
        cache=cache,
        policy=RetryPolicy(
            max_attempts=app_settings.retry_max_attempts,
            initial_delay_seconds=app_settings.retry_initial_delay_seconds,
            max_delay_seconds=app_settings.retry_max_delay_seconds,
            jitter_ratio=app_settings.retry_jitter_ratio,
        ),
    )
    wallet = WalletSessionManager(
        logger=logger,
        signer=signer,
        backend=backend,
        network=app_settings.hedera_network,
    )
    poller = PaymentVerificationPoller(
        logger=logger,
        backend=backend,
        interval_seconds=app_settings.verify_interval_seconds,
        max_attempts=app_settings.verify_max_attempts,
        timeout_seconds=app_settings.verify_timeout_seconds,
        request_timeout_seconds=app_settings.verify_request_timeout_seconds,
    )
    saga = TokenizationSaga(
        logger=logger,
        wallet=wallet,
        backend=backend,
        executor=executor,
        poller=poller,
        audit=storage if app_settings.audit_enabled else None,
        post_payment_settle_seconds=app_settings.post_payment_settle_seconds,
        pre_mint_settle_seconds=app_settings.pre_mint_settle_seconds,
    )
    return Services(
        backend=backend,
        signer=signer,
        storage=storage,
        executor=executor,
        wallet=wallet,
        poller=poller,
        saga=saga,
        catalog=ParcelCatalog(backend=backend, executor=executor),
    )


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    services: Services,
    with_signer: bool,
) -> None:
    for attempt in range(1, BOOTSTRAP_ATTEMPTS + 1):
        if stop_event.is_set():
            break
        try:
            if services.storage is not None:
                await services.storage.connect()
            await services.backend.connect()
            if with_signer:
                await services.signer.start()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                attempt=attempt,
                error=str(error),
            )
            await close_services(services)
            if attempt == BOOTSTRAP_ATTEMPTS:
                raise
            await wait_with_stop(stop_event, BOOTSTRAP_BACKOFF_SECONDS * attempt)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def close_services(services: Services) -> None:
    with contextlib.suppress(Exception):
        await services.poller.stop_all()
    with contextlib.suppress(Exception):
        await services.wallet.disconnect()
    with contextlib.suppress(Exception):
        await services.signer.close()
    with contextlib.suppress(Exception):
        await services.backend.close()
    if services.storage is not None:
        with contextlib.suppress(Exception):
            await services.storage.close()


def load_documents(paths: list[str]) -> tuple[DocumentUpload, ...]:
    documents: list[DocumentUpload] = []
    for raw_path in paths:
        path = Path(raw_path)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        documents.append(DocumentUpload(name=path.name, content=path.read_bytes(), content_type=content_type))
    return tuple(documents)


def load_parcel_data(path: str) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Parcel file {path} must contain a JSON object")
    return data


async def run_list_parcels(services: Services, filters: dict[str, str]) -> dict[str, Any]:
    parcels = await services.catalog.fetch_parcels(filters)
    return {"count": len(parcels), "parcels": parcels}


async def run_my_parcels(services: Services, account_ref: str) -> dict[str, Any]:
    parcels = await services.catalog.fetch_my_parcels(account_ref)
    return {"account": account_ref, "count": len(parcels), "parcels": parcels}


async def run_verify(
    services: Services,
    *,
    transaction_ref: str,
    account_ref: str,
    expected_amount: float,
) -> dict[str, Any]:
    outcome: dict[str, Any] = {}

    def on_failed(_task: Any, reason: str) -> None:
        outcome["reason"] = reason

    services.poller.start_verification(
        transaction_ref=transaction_ref,
        account_ref=account_ref,
        expected_amount=expected_amount,
        on_failed=on_failed,
    )
    task = await services.poller.join(transaction_ref)
    if task is None:
        return {"transaction_ref": transaction_ref, "status": "unknown"}
    return {
        "transaction_ref": transaction_ref,
        "status": task.status.value,
        "attempts": task.attempts,
        "verified_at": task.verified_at,
        "outcome": task.outcome.value if task.outcome else None,
        "reason": outcome.get("reason"),
    }


async def run_tokenize(
    services: Services,
    *,
    logger: logging.Logger,
    parcel_path: str,
    document_paths: list[str],
    operation_id: str | None,
    wait_for_verification: bool,
    emit: Callable[[dict[str, Any]], None],
) -> dict[str, Any]:
    request = TokenizationRequest(
        operation_id=operation_id or uuid.uuid4().hex,
        parcel_data=load_parcel_data(parcel_path),
        documents=load_documents(document_paths),
    )

    progress = SagaProgress(logger=logger)

    async def forward(update: StepUpdate) -> None:
        emit({"type": "step", **update.to_dict()})

    progress.add_listener(forward)
    result = await services.saga.run(request, progress=progress)

    if wait_for_verification:
        await guarded_call(
            lambda: services.poller.join(result.payment_ref),
            logger=logger,
            event="verification_wait_failed",
            message="Waiting for payment verification failed",
            payment_ref=result.payment_ref,
        )
    return {"operation_id": request.operation_id, **result.to_dict(), "steps": progress.snapshot()}
