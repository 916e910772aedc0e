from __future__ import annotations

import json
import re
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from landtoken.backend.types import TINYBARS_PER_HBAR, ExchangeRate

ACCOUNT_REF_PATTERN = re.compile(r"^0\.0\.\d+$")
PAYMENT_PURPOSE = "parcel_mint"


class SignerEvent(str, Enum):
    SESSION_ENDED = "session-ended"
    ACCOUNTS_CHANGED = "accounts-changed"


SignerEventListener = Callable[[SignerEvent], Awaitable[None] | None]


def is_valid_account_ref(value: Any) -> bool:
    return isinstance(value, str) and bool(ACCOUNT_REF_PATTERN.match(value.strip()))


def validate_account_ref(value: Any) -> str:
    if not is_valid_account_ref(value):
        raise ValueError(f"Invalid ledger account reference: {value!r}")
    return str(value).strip()


def hbar_to_tinybars(amount_hbar: float) -> int:
    return int(round(amount_hbar * TINYBARS_PER_HBAR))


def make_transaction_id(payer: str, *, now: float | None = None) -> str:
    timestamp = time.time() if now is None else now
    seconds = int(timestamp)
    nanos = int(round((timestamp - seconds) * 1_000_000_000))
    if nanos >= 1_000_000_000:
        seconds += 1
        nanos -= 1_000_000_000
    return f"{payer}@{seconds}.{nanos:09d}"


@dataclass(slots=True, frozen=True)
class SignerConnection:
    account_ref: str
    network: str
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class SignerExecution:
    transaction_ref: str | None
    status: str = "SUCCESS"


@dataclass(slots=True, frozen=True)
class FeePaymentTransaction:
    transaction_id: str
    payer: str
    treasury: str
    amount_tinybars: int
    amount_hbar: float
    amount_usd: float
    memo: str
    network: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


def build_fee_payment(
    *,
    payer: str,
    quote: ExchangeRate,
    network: str | None = None,
    now: float | None = None,
) -> FeePaymentTransaction:
    payer_ref = validate_account_ref(payer)
    treasury_ref = validate_account_ref(quote.treasury_account)
    amount_tinybars = hbar_to_tinybars(quote.mint_fee_hbar)
    if amount_tinybars <= 0:
        raise ValueError(f"Fee amount must be positive, got {quote.mint_fee_hbar} HBAR")

    return FeePaymentTransaction(
        transaction_id=make_transaction_id(payer_ref, now=now),
        payer=payer_ref,
        treasury=treasury_ref,
        amount_tinybars=amount_tinybars,
        amount_hbar=quote.mint_fee_hbar,
        amount_usd=quote.mint_fee_usd,
        memo=f"Payment for {PAYMENT_PURPOSE}: {quote.mint_fee_usd:g} USD",
        network=network or quote.network,
    )


class ExternalSigner(Protocol):
    @property
    def is_available(self) -> bool: ...

    async def connect(self, *, network: str) -> SignerConnection: ...

    async def disconnect(self) -> None: ...

    async def sign(self, payload: bytes) -> bytes: ...

    async def execute_signed(self, transaction: FeePaymentTransaction) -> SignerExecution: ...

    def subscribe(self, listener: SignerEventListener) -> Callable[[], None]: ...
