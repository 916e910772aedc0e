from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    USER_CANCELLED = "user_cancelled"
    RETRYABLE_TRANSIENT = "retryable_transient"
    RETRIES_EXHAUSTED = "retries_exhausted"
    DUPLICATE_OPERATION = "duplicate_operation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CRITICAL_PARTIAL_FAILURE = "critical_partial_failure"
    BACKEND_CONFLICT = "backend_conflict"
    BACKEND_UNREACHABLE = "backend_unreachable"
    BACKEND_REJECTED = "backend_rejected"
    INVALID_RESPONSE = "invalid_response"
    SIGNER_NOT_INSTALLED = "signer_not_installed"
    SIGNER_FAILURE = "signer_failure"
    WALLET_NOT_CONNECTED = "wallet_not_connected"
    WALLET_CONNECTION = "wallet_connection"


class LandTokenError(RuntimeError):
    kind: ErrorKind = ErrorKind.BACKEND_REJECTED
    retryable: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": str(self),
        }
