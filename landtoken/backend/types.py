from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

TINYBARS_PER_HBAR = 100_000_000


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


@dataclass(slots=True, frozen=True)
class ExchangeRate:
    usd_to_hbar: float
    mint_fee_usd: float
    mint_fee_hbar: float
    network: str
    treasury_account: str

    @property
    def mint_fee_tinybars(self) -> int:
        return int(round(self.mint_fee_hbar * TINYBARS_PER_HBAR))

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExchangeRate":
        mint_fee = payload.get("mint_fee") if isinstance(payload.get("mint_fee"), dict) else {}
        return cls(
            usd_to_hbar=to_float(payload.get("USD_to_HBAR"), 0.0),
            mint_fee_usd=to_float(mint_fee.get("USD"), 0.0),
            mint_fee_hbar=to_float(mint_fee.get("HBAR"), 0.0),
            network=str(payload.get("network") or "testnet"),
            treasury_account=str(payload.get("operator_account") or "").strip(),
        )


@dataclass(slots=True, frozen=True)
class BalanceCheck:
    account_ref: str
    balance: float
    required: float
    can_pay: bool

    @classmethod
    def from_payload(cls, account_ref: str, payload: dict[str, Any]) -> "BalanceCheck":
        balance = to_float(payload.get("balance"), 0.0)
        required = to_float(payload.get("required"), 0.0)
        can_pay = payload.get("canPay")
        return cls(
            account_ref=str(payload.get("accountId") or account_ref),
            balance=balance,
            required=required,
            can_pay=bool(can_pay) if can_pay is not None else balance >= required,
        )


@dataclass(slots=True, frozen=True)
class WriteEnvelope:
    success: bool
    resource_id: str | None
    payload: dict[str, Any]
    message: str = ""


@dataclass(slots=True, frozen=True)
class MintReceipt:
    token_id: str
    transaction_ref: str
    serial_number: int | None = None
    payment_transaction_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class DocumentUpload:
    name: str
    content: bytes = field(repr=False)
    content_type: str = "application/octet-stream"


@dataclass(slots=True, frozen=True)
class UploadResult:
    name: str
    status: str
    document_id: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class VerificationResponse:
    success: bool
    pending: bool
    message: str = ""
    payment: dict[str, Any] | None = None
    retry_after_seconds: float | None = None

    @property
    def failed(self) -> bool:
        return not self.success and not self.pending
