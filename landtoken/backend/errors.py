from __future__ import annotations

from typing import Any

from landtoken.errors import ErrorKind, LandTokenError


class BackendError(LandTokenError):
    kind = ErrorKind.BACKEND_REJECTED

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload.update({"status": self.status, "code": self.code, "details": self.details})
        return payload


class RateLimitedError(BackendError):
    kind = ErrorKind.RETRYABLE_TRANSIENT
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status: int | None = 429,
        retry_after_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, status=status, code="RATE_LIMITED", details=details)
        self.retry_after_seconds = retry_after_seconds


class RequestTimeoutError(BackendError):
    kind = ErrorKind.RETRYABLE_TRANSIENT
    retryable = True


class BackendUnreachableError(BackendError):
    kind = ErrorKind.BACKEND_UNREACHABLE


class BackendConflictError(BackendError):
    kind = ErrorKind.BACKEND_CONFLICT


class BackendRejectedError(BackendError):
    kind = ErrorKind.BACKEND_REJECTED


class InvalidResponseError(BackendError):
    kind = ErrorKind.INVALID_RESPONSE
