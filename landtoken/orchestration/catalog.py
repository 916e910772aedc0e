from __future__ import annotations

from typing import Any

from landtoken.backend.client import BackendClient, ensure_write_succeeded
from landtoken.backend.types import MintReceipt, WriteEnvelope

from .keys import list_parcels_key, my_parcels_key, parcel_key, parcel_write_prefixes
from .retry import RetryExecutor
from .types import OperationKind


class ParcelCatalog:
    def __init__(self, *, backend: BackendClient, executor: RetryExecutor) -> None:
        self._backend = backend
        self._executor = executor

    async def fetch_parcels(self, filters: dict[str, str] | None = None) -> list[dict[str, Any]]:
        return await self._executor.execute(
            lambda: self._backend.list_parcels(filters),
            operation_key=list_parcels_key(filters),
            kind=OperationKind.READ,
        )

    async def fetch_my_parcels(self, account_ref: str) -> list[dict[str, Any]]:
        return await self._executor.execute(
            self._backend.list_my_parcels,
            operation_key=my_parcels_key(account_ref),
            kind=OperationKind.READ,
        )

    async def get_parcel_details(self, parcel_id: str) -> dict[str, Any]:
        return await self._executor.execute(
            lambda: self._backend.get_parcel(parcel_id),
            operation_key=parcel_key(parcel_id),
            kind=OperationKind.READ,
        )

    async def delist_parcel(self, parcel_id: str) -> WriteEnvelope:
        envelope = await self._executor.execute(
            lambda: self._backend.delist_parcel(parcel_id),
            operation_key=f"delist-{parcel_id}",
            invalidates=parcel_write_prefixes(parcel_id),
        )
        return ensure_write_succeeded(envelope, context="delisting")

    async def mint_parcel(
        self,
        parcel_id: str,
        *,
        account_ref: str,
        payment_ref: str | None = None,
    ) -> MintReceipt:
        envelope = await self._executor.execute(
            lambda: self._backend.mint_parcel(
                parcel_id=parcel_id,
                account_ref=account_ref,
                payment_ref=payment_ref,
            ),
            operation_key=f"mint-{parcel_id}",
            invalidates=parcel_write_prefixes(parcel_id),
        )
        return BackendClient.mint_receipt(ensure_write_succeeded(envelope, context="minting"))
