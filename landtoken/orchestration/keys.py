from __future__ import annotations

import json
from typing import Any

LIST_PARCELS_PREFIX = "list-parcels-"
MY_PARCELS_PREFIX = "my-parcels-"
PARCEL_PREFIX = "parcel-"
EXCHANGE_RATE_KEY = "exchange-rate"


def list_parcels_key(filters: dict[str, Any] | None = None) -> str:
    return LIST_PARCELS_PREFIX + json.dumps(filters or {}, sort_keys=True, separators=(",", ":"), default=str)


def my_parcels_key(account_ref: str) -> str:
    return f"{MY_PARCELS_PREFIX}{account_ref}"


def parcel_key(parcel_id: str) -> str:
    return f"{PARCEL_PREFIX}{parcel_id}"


def parcel_write_prefixes(parcel_id: str | None = None) -> tuple[str, ...]:
    prefixes = [LIST_PARCELS_PREFIX, MY_PARCELS_PREFIX]
    if parcel_id:
        prefixes.append(parcel_key(parcel_id))
    return tuple(prefixes)


def check_balance_key(account_ref: str) -> str:
    return f"check-balance-{account_ref}"


def tokenize_key(operation_id: str) -> str:
    return f"tokenize-{operation_id}"
