from __future__ import annotations

import random
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from landtoken.backend.types import DocumentUpload, MintReceipt, UploadResult


class OperationKind(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.5
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be within [0, 1]")

    def base_delay(self, retry_index: int) -> float:
        return min(self.initial_delay_seconds * (2 ** max(0, retry_index)), self.max_delay_seconds)

    def delay_for(self, retry_index: int, rng: random.Random | None = None) -> float:
        delay = self.base_delay(retry_index)
        if self.jitter_ratio <= 0 or delay <= 0:
            return delay
        uniform = rng.uniform if rng is not None else random.uniform
        return delay + uniform(0.0, delay * self.jitter_ratio)


@dataclass(slots=True, frozen=True)
class CacheEntry:
    key: str
    payload: Any
    written_at: float


class SagaStepId(str, Enum):
    WALLET_CONNECTION = "wallet-connection"
    PAYMENT_PROCESSING = "payment-processing"
    PARCEL_CREATION = "parcel-creation"
    DOCUMENT_UPLOAD = "document-upload"
    NFT_MINTING = "nft-minting"


SAGA_STEP_ORDER: tuple[SagaStepId, ...] = tuple(SagaStepId)


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class SagaStep:
    id: SagaStepId
    status: StepStatus = StepStatus.PENDING
    detail: str = ""
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class StepUpdate:
    step: SagaStepId
    status: StepStatus
    detail: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "status": self.status.value,
            "detail": self.detail,
            "error": self.error,
        }


class VerificationStatus(str, Enum):
    VERIFYING = "verifying"
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class VerificationOutcome(str, Enum):
    REJECTED = "rejected"
    INCONCLUSIVE = "inconclusive"


@dataclass(slots=True)
class VerificationTask:
    transaction_ref: str
    account_ref: str
    expected_amount: float
    status: VerificationStatus = VerificationStatus.VERIFYING
    attempts: int = 0
    last_error: str | None = None
    verified_at: str | None = None
    payment: dict[str, Any] | None = None
    outcome: VerificationOutcome | None = None


class WalletState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PENDING_BACKEND_SYNC = "pending_backend_sync"
    CONNECTED = "connected"


@dataclass(slots=True, frozen=True)
class WalletSession:
    state: WalletState
    is_available: bool
    account_ref: str | None
    network: str

    @property
    def is_connecting(self) -> bool:
        return self.state in {WalletState.CONNECTING, WalletState.PENDING_BACKEND_SYNC}

    @property
    def is_connected(self) -> bool:
        return self.state is WalletState.CONNECTED


@dataclass(slots=True, frozen=True)
class TokenizationRequest:
    operation_id: str
    parcel_data: dict[str, Any]
    documents: tuple[DocumentUpload, ...] = ()


@dataclass(slots=True)
class PaymentReceipt:
    transaction_ref: str
    account_ref: str
    amount_hbar: float
    amount_usd: float
    amount_tinybars: int
    verified: bool = False
    verification_status: VerificationStatus = VerificationStatus.VERIFYING
    verification_error: str | None = None
    verification_outcome: VerificationOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["verification_status"] = self.verification_status.value
        payload["verification_outcome"] = self.verification_outcome.value if self.verification_outcome else None
        return payload


@dataclass(slots=True, frozen=True)
class SagaCheckpoint:
    operation_id: str
    payment: PaymentReceipt
    parcel: dict[str, Any] | None = None
    upload_results: tuple[UploadResult, ...] = ()

    @property
    def parcel_id(self) -> str | None:
        if self.parcel is None or self.parcel.get("id") is None:
            return None
        return str(self.parcel["id"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "payment": self.payment.to_dict(),
            "parcel": self.parcel,
            "upload_results": [result.to_dict() for result in self.upload_results],
        }


@dataclass(slots=True, frozen=True)
class TokenizationResult:
    parcel_record: dict[str, Any]
    payment: PaymentReceipt
    mint: MintReceipt
    upload_results: tuple[UploadResult, ...] = field(default_factory=tuple)

    @property
    def payment_ref(self) -> str:
        return self.payment.transaction_ref

    @property
    def mint_ref(self) -> str:
        return self.mint.transaction_ref

    @property
    def verified(self) -> bool:
        return self.payment.verified

    def to_dict(self) -> dict[str, Any]:
        return {
            "parcel_record": self.parcel_record,
            "payment_ref": self.payment_ref,
            "upload_results": [result.to_dict() for result in self.upload_results],
            "mint_ref": self.mint_ref,
            "mint": self.mint.to_dict(),
            "verified": self.verified,
            "payment": self.payment.to_dict(),
        }
