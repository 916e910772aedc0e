from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from landtoken.errors import ErrorKind, LandTokenError

if TYPE_CHECKING:
    from .types import SagaCheckpoint, SagaStepId


class DuplicateOperationError(LandTokenError):
    kind = ErrorKind.DUPLICATE_OPERATION

    def __init__(self, key: str) -> None:
        super().__init__(f"Operation already in progress: {key}")
        self.key = key


class RetriesExhaustedError(LandTokenError):
    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(self, message: str, *, last_error: BaseException, attempts: int) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class WalletNotConnectedError(LandTokenError):
    kind = ErrorKind.WALLET_NOT_CONNECTED

    def __init__(self, message: str = "Wallet is not connected") -> None:
        super().__init__(message)


class WalletFailure(str, Enum):
    USER_CANCELLED = "user_cancelled"
    SIGNER_NOT_INSTALLED = "signer_not_installed"
    BACKEND_UNREACHABLE = "backend_unreachable"
    BACKEND_CONFLICT = "backend_conflict"
    CONNECTION_FAILED = "connection_failed"


WALLET_FAILURE_MESSAGES: dict[WalletFailure, str] = {
    WalletFailure.USER_CANCELLED: "Wallet connection was cancelled",
    WalletFailure.SIGNER_NOT_INSTALLED: "Wallet not found. Please install the wallet extension.",
    WalletFailure.BACKEND_UNREACHABLE: "Cannot connect to server. Please check if the backend is running.",
    WalletFailure.BACKEND_CONFLICT: "This wallet is already connected to another account",
    WalletFailure.CONNECTION_FAILED: "Failed to connect wallet. Please try again.",
}


class WalletConnectionError(LandTokenError):
    kind = ErrorKind.WALLET_CONNECTION

    def __init__(
        self,
        failure: WalletFailure,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or WALLET_FAILURE_MESSAGES[failure])
        self.failure = failure
        self.details = details or {}
        if failure is WalletFailure.USER_CANCELLED:
            self.kind = ErrorKind.USER_CANCELLED

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload.update({"failure": self.failure.value, "details": self.details})
        return payload


class InsufficientFundsError(LandTokenError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, *, balance: float, required: float, account_ref: str | None = None) -> None:
        super().__init__(
            f"Insufficient balance: {balance:g} HBAR available, {required:g} HBAR required"
        )
        self.balance = balance
        self.required = required
        self.account_ref = account_ref


class CriticalPartialFailureError(LandTokenError):
    kind = ErrorKind.CRITICAL_PARTIAL_FAILURE

    def __init__(
        self,
        *,
        step: "SagaStepId",
        payment_ref: str,
        checkpoint: "SagaCheckpoint",
        cause: BaseException,
    ) -> None:
        parcel_id = checkpoint.parcel_id
        target = f"parcel {parcel_id}" if parcel_id else "no parcel record"
        super().__init__(
            f"Payment {payment_ref} was submitted but {step.value} failed ({target}): {cause}. "
            f"Contact support with transaction reference {payment_ref}."
        )
        self.step = step
        self.payment_ref = payment_ref
        self.parcel_id = parcel_id
        self.checkpoint = checkpoint
        self.cause = cause

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload.update(
            {
                "step": self.step.value,
                "payment_ref": self.payment_ref,
                "parcel_id": self.parcel_id,
                "cause": str(self.cause),
                "checkpoint": self.checkpoint.to_dict(),
            }
        )
        return payload
