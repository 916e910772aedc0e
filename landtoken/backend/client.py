from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from landtoken.common import log_event

from .errors import (
    BackendConflictError,
    BackendRejectedError,
    BackendUnreachableError,
    InvalidResponseError,
    RateLimitedError,
    RequestTimeoutError,
)
from .types import (
    BalanceCheck,
    DocumentUpload,
    ExchangeRate,
    MintReceipt,
    UploadResult,
    VerificationResponse,
    WriteEnvelope,
)

TIMEOUT_STATUSES = frozenset({408, 504})


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _error_message_from_payload(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "details"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return default


def _resource_id(payload: dict[str, Any], key: str) -> str | None:
    resource = payload.get(key)
    if isinstance(resource, dict) and resource.get("id") is not None:
        return str(resource["id"])
    return None


def ensure_write_succeeded(envelope: WriteEnvelope, *, context: str) -> WriteEnvelope:
    if not envelope.success:
        raise BackendRejectedError(
            envelope.message or f"Backend reported failure during {context}",
            details={"resource_id": envelope.resource_id, "context": context},
        )
    return envelope


class BackendClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        data: aiohttp.FormData | None = None,
        timeout_seconds: float | None = None,
        accept_statuses: frozenset[int] = frozenset(),
    ) -> tuple[int, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Backend HTTP session is not initialized.")

        url = f"{self._base_url}/{path.lstrip('/')}"
        request_kwargs: dict[str, Any] = {"params": params, "headers": self._headers()}
        if data is not None:
            request_kwargs["data"] = data
        elif json_body is not None:
            request_kwargs["json"] = json_body
        if timeout_seconds is not None:
            request_kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout_seconds)

        try:
            async with self._session.request(method, url, **request_kwargs) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                raw_text = await response.text()
        except asyncio.TimeoutError as error:
            raise RequestTimeoutError(
                f"{method} {path} timed out",
                details={"path": path},
            ) from error
        except aiohttp.ClientConnectionError as error:
            raise BackendUnreachableError(
                f"Cannot reach backend for {method} {path}: {error}",
                details={"path": path},
            ) from error
        except aiohttp.ClientError as error:
            raise BackendUnreachableError(
                f"Backend transport error for {method} {path}: {error}",
                details={"path": path, "error_type": type(error).__name__},
            ) from error

        parsed: Any
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text[:240]}

        if status < 400 or status in accept_statuses:
            return status, parsed

        message = _error_message_from_payload(parsed, f"{method} {path} failed with status {status}")
        code = parsed.get("code") if isinstance(parsed, dict) else None
        details = parsed.get("details") if isinstance(parsed, dict) else None
        details = details if isinstance(details, dict) else {}

        log_event(
            self._logger,
            level="warning",
            event="backend_request_failed",
            message="Backend request returned an error status",
            method=method,
            path=path,
            status=status,
            code=code,
        )

        if status == 429:
            raise RateLimitedError(message, retry_after_seconds=retry_after_seconds, details=details)
        if status in TIMEOUT_STATUSES:
            raise RequestTimeoutError(message, status=status, code=code, details=details)
        if status == 409:
            raise BackendConflictError(message, status=status, code=code, details=details)
        raise BackendRejectedError(message, status=status, code=code, details=details)

    @staticmethod
    def _require_dict(payload: Any, *, context: str) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise InvalidResponseError(f"Unexpected {context} response: {payload!r}")
        return payload

    @staticmethod
    def _ensure_success(body: dict[str, Any], *, context: str) -> None:
        if body.get("success", True) is False:
            code = body.get("code")
            raise BackendRejectedError(
                _error_message_from_payload(body, f"Backend reported failure during {context}"),
                code=code if isinstance(code, str) else None,
                details={"context": context},
            )

    @staticmethod
    def _write_envelope(body: dict[str, Any], *, resource_id: str | None, payload: dict[str, Any]) -> WriteEnvelope:
        return WriteEnvelope(
            success=bool(body.get("success", True)),
            resource_id=resource_id,
            payload=payload,
            message=str(body.get("message") or ""),
        )

    async def list_parcels(self, filters: dict[str, str] | None = None) -> list[dict[str, Any]]:
        _, payload = await self._request("GET", "api/parcels", params=dict(filters or {}))
        parcels = self._require_dict(payload, context="list parcels").get("parcels")
        return list(parcels) if isinstance(parcels, list) else []

    async def list_my_parcels(self) -> list[dict[str, Any]]:
        _, payload = await self._request("GET", "api/parcels/my/parcels")
        parcels = self._require_dict(payload, context="my parcels").get("parcels")
        return list(parcels) if isinstance(parcels, list) else []

    async def get_parcel(self, parcel_id: str) -> dict[str, Any]:
        if not parcel_id:
            raise ValueError("Missing parcel ID")
        _, payload = await self._request("GET", f"api/parcels/{parcel_id}")
        parcel = self._require_dict(payload, context="parcel details").get("parcel")
        if not isinstance(parcel, dict):
            raise InvalidResponseError("Missing parcel data in response")
        return parcel

    async def create_parcel(self, parcel_data: dict[str, Any]) -> WriteEnvelope:
        _, payload = await self._request("POST", "api/parcels", json_body=parcel_data)
        body = self._require_dict(payload, context="create parcel")
        self._ensure_success(body, context="parcel creation")
        parcel = body.get("parcel")
        if not isinstance(parcel, dict) or parcel.get("id") is None:
            raise InvalidResponseError("Invalid server response during parcel creation")
        return self._write_envelope(body, resource_id=str(parcel["id"]), payload=parcel)

    async def upload_document(self, parcel_id: str, document: DocumentUpload) -> UploadResult:
        form = aiohttp.FormData()
        form.add_field(
            "documents",
            document.content,
            filename=document.name,
            content_type=document.content_type,
        )
        _, payload = await self._request("POST", f"api/parcels/{parcel_id}/documents", data=form)
        body = self._require_dict(payload, context="document upload")

        results = body.get("uploadResults")
        if isinstance(results, list) and results and isinstance(results[0], dict):
            first = results[0]
            status = str(first.get("status") or "error")
            return UploadResult(
                name=document.name,
                status="success" if status == "success" else "error",
                document_id=str(first["id"]) if first.get("id") is not None else None,
                error=str(first.get("error")) if first.get("error") else None,
            )

        if body.get("success") is False:
            return UploadResult(
                name=document.name,
                status="error",
                error=_error_message_from_payload(body, "Upload rejected"),
            )
        return UploadResult(name=document.name, status="success", document_id=_resource_id(body, "document"))

    async def mint_parcel(
        self,
        *,
        parcel_id: str,
        account_ref: str,
        payment_ref: str | None = None,
    ) -> WriteEnvelope:
        request_body: dict[str, Any] = {"parcelId": parcel_id, "userAccountId": account_ref}
        if payment_ref:
            request_body["paymentTransactionId"] = payment_ref
        _, payload = await self._request("POST", "api/parcels/mint", json_body=request_body)
        body = self._require_dict(payload, context="mint")
        self._ensure_success(body, context="minting")
        mint_result = body.get("mintResult")
        if not isinstance(mint_result, dict) or not mint_result.get("tokenId"):
            raise InvalidResponseError("Invalid minting response from server")
        return self._write_envelope(
            body,
            resource_id=_resource_id(body, "parcel") or parcel_id,
            payload=body,
        )

    @staticmethod
    def mint_receipt(envelope: WriteEnvelope) -> MintReceipt:
        mint_result = envelope.payload.get("mintResult") or {}
        serial = mint_result.get("serialNumber")
        return MintReceipt(
            token_id=str(mint_result.get("tokenId")),
            transaction_ref=str(mint_result.get("transactionId") or ""),
            serial_number=int(serial) if isinstance(serial, (int, float, str)) and str(serial).isdigit() else None,
            payment_transaction_ref=mint_result.get("paymentTransactionId"),
        )

    async def delist_parcel(self, parcel_id: str) -> WriteEnvelope:
        _, payload = await self._request(
            "PATCH",
            f"api/parcels/{parcel_id}/delist",
            json_body={"status": "MINTED"},
        )
        body = self._require_dict(payload, context="delist")
        self._ensure_success(body, context="delisting")
        parcel = body.get("parcel")
        if not isinstance(parcel, dict):
            raise InvalidResponseError("Invalid server response during delisting")
        return self._write_envelope(
            body,
            resource_id=_resource_id(body, "parcel") or parcel_id,
            payload=parcel,
        )

    async def get_exchange_rate(self) -> ExchangeRate:
        _, payload = await self._request("GET", "api/payment/exchange-rate")
        rate = ExchangeRate.from_payload(self._require_dict(payload, context="exchange rate"))
        if rate.mint_fee_hbar <= 0 or not rate.treasury_account:
            raise InvalidResponseError(f"Incomplete exchange rate payload: {payload}")
        return rate

    async def check_balance(self, account_ref: str) -> BalanceCheck:
        _, payload = await self._request("GET", f"api/payment/check-balance/{account_ref}")
        return BalanceCheck.from_payload(account_ref, self._require_dict(payload, context="balance"))

    async def verify_payment(
        self,
        *,
        transaction_ref: str,
        account_ref: str,
        expected_amount: float,
        timeout_seconds: float | None = None,
    ) -> VerificationResponse:
        status, payload = await self._request(
            "POST",
            "api/payment/verify-payment",
            json_body={
                "transactionId": transaction_ref,
                "userAccountId": account_ref,
                "expectedAmount": expected_amount,
            },
            timeout_seconds=timeout_seconds,
            accept_statuses=frozenset({400}),
        )
        body = self._require_dict(payload, context="verify payment")
        retry_after = body.get("retryAfter")
        payment = body.get("payment")
        return VerificationResponse(
            success=status < 400 and bool(body.get("success")),
            pending=status == 202 or bool(body.get("pending")),
            message=_error_message_from_payload(body, ""),
            payment=payment if isinstance(payment, dict) else None,
            retry_after_seconds=float(retry_after) if isinstance(retry_after, (int, float)) else None,
        )

    async def link_wallet(self, account_ref: str) -> WriteEnvelope:
        _, payload = await self._request(
            "POST",
            "api/auth/user/wallet",
            json_body={"walletHedera": account_ref},
        )
        body = self._require_dict(payload, context="link wallet")
        self._ensure_success(body, context="wallet link")
        return self._write_envelope(body, resource_id=_resource_id(body, "user"), payload=body)
