from .client import BackendClient
from .errors import (
    BackendConflictError,
    BackendError,
    BackendRejectedError,
    BackendUnreachableError,
    InvalidResponseError,
    RateLimitedError,
    RequestTimeoutError,
)
from .types import (
    TINYBARS_PER_HBAR,
    BalanceCheck,
    DocumentUpload,
    ExchangeRate,
    MintReceipt,
    UploadResult,
    VerificationResponse,
    WriteEnvelope,
)

__all__ = [
    "BackendClient",
    "BackendConflictError",
    "BackendError",
    "BackendRejectedError",
    "BackendUnreachableError",
    "BalanceCheck",
    "DocumentUpload",
    "ExchangeRate",
    "InvalidResponseError",
    "MintReceipt",
    "RateLimitedError",
    "RequestTimeoutError",
    "TINYBARS_PER_HBAR",
    "UploadResult",
    "VerificationResponse",
    "WriteEnvelope",
]
