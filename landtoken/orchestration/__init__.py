from .cache import InMemoryResponseCache, RedisResponseCache, ResponseCache
from .catalog import ParcelCatalog
from .dedup import (
    InMemoryOperationRegistry,
    OperationRegistry,
    RedisOperationRegistry,
    hold_operation,
)
from .errors import (
    CriticalPartialFailureError,
    DuplicateOperationError,
    InsufficientFundsError,
    RetriesExhaustedError,
    WalletConnectionError,
    WalletFailure,
    WalletNotConnectedError,
)
from .progress import SagaProgress
from .retry import RetryExecutor, is_retryable
from .saga import TokenizationSaga
from .types import (
    CacheEntry,
    OperationKind,
    PaymentReceipt,
    RetryPolicy,
    SagaCheckpoint,
    SagaStepId,
    StepStatus,
    StepUpdate,
    TokenizationRequest,
    TokenizationResult,
    VerificationOutcome,
    VerificationStatus,
    VerificationTask,
    WalletSession,
    WalletState,
)
from .verification import PaymentVerificationPoller
from .wallet import ConnectionOutcome, WalletSessionManager, classify_wallet_error

__all__ = [
    "CacheEntry",
    "ConnectionOutcome",
    "CriticalPartialFailureError",
    "DuplicateOperationError",
    "InMemoryOperationRegistry",
    "InMemoryResponseCache",
    "InsufficientFundsError",
    "OperationKind",
    "OperationRegistry",
    "ParcelCatalog",
    "PaymentReceipt",
    "PaymentVerificationPoller",
    "RedisOperationRegistry",
    "RedisResponseCache",
    "ResponseCache",
    "RetriesExhaustedError",
    "RetryExecutor",
    "RetryPolicy",
    "SagaCheckpoint",
    "SagaProgress",
    "SagaStepId",
    "StepStatus",
    "StepUpdate",
    "TokenizationRequest",
    "TokenizationResult",
    "TokenizationSaga",
    "VerificationOutcome",
    "VerificationStatus",
    "VerificationTask",
    "WalletConnectionError",
    "WalletFailure",
    "WalletNotConnectedError",
    "WalletSession",
    "WalletSessionManager",
    "WalletState",
    "classify_wallet_error",
    "hold_operation",
    "is_retryable",
]
