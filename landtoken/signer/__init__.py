from .bridge import HttpSignerBridge
from .errors import (
    SignerError,
    SignerInsufficientFundsError,
    SignerNotInstalledError,
    UserCancelledError,
)
from .types import (
    ExternalSigner,
    FeePaymentTransaction,
    SignerConnection,
    SignerEvent,
    SignerExecution,
    build_fee_payment,
    hbar_to_tinybars,
    is_valid_account_ref,
    make_transaction_id,
    validate_account_ref,
)

__all__ = [
    "ExternalSigner",
    "FeePaymentTransaction",
    "HttpSignerBridge",
    "SignerConnection",
    "SignerError",
    "SignerEvent",
    "SignerExecution",
    "SignerInsufficientFundsError",
    "SignerNotInstalledError",
    "UserCancelledError",
    "build_fee_payment",
    "hbar_to_tinybars",
    "is_valid_account_ref",
    "make_transaction_id",
    "validate_account_ref",
]
