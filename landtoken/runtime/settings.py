from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_network(value: str) -> str:
    network = (value or "").strip().lower()
    if network in {"testnet", "mainnet"}:
        return network
    return "testnet"


def normalize_backend_choice(value: str) -> str:
    choice = (value or "").strip().lower()
    if choice in {"memory", "redis"}:
        return choice
    return "memory"


@dataclass(slots=True)
class AppSettings:
    api_base_url: str
    api_token: str
    api_request_timeout_seconds: float
    hedera_network: str
    signer_bridge_url: str
    signer_event_poll_seconds: float
    cache_ttl_seconds: float
    retry_max_attempts: int
    retry_initial_delay_seconds: float
    retry_max_delay_seconds: float
    retry_jitter_ratio: float
    verify_interval_seconds: float
    verify_max_attempts: int
    verify_timeout_seconds: float
    verify_request_timeout_seconds: float
    post_payment_settle_seconds: float
    pre_mint_settle_seconds: float
    operation_registry_backend: str
    cache_backend: str
    audit_enabled: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        initial_delay = max(0.0, to_float(os.getenv("RETRY_INITIAL_DELAY_SECONDS"), 1.5))
        return cls(
            api_base_url=(os.getenv("API_BASE_URL", "http://localhost:3001").strip() or "http://localhost:3001"),
            api_token=os.getenv("API_TOKEN", "").strip(),
            api_request_timeout_seconds=max(1.0, to_float(os.getenv("API_REQUEST_TIMEOUT_SECONDS"), 10.0)),
            hedera_network=normalize_network(os.getenv("HEDERA_NETWORK", "testnet")),
            signer_bridge_url=os.getenv("SIGNER_BRIDGE_URL", "http://localhost:8787").strip(),
            signer_event_poll_seconds=max(0.25, to_float(os.getenv("SIGNER_EVENT_POLL_SECONDS"), 2.0)),
            cache_ttl_seconds=max(0.0, to_float(os.getenv("CACHE_TTL_SECONDS"), 30.0)),
            retry_max_attempts=max(1, to_int(os.getenv("RETRY_MAX_ATTEMPTS"), 3)),
            retry_initial_delay_seconds=initial_delay,
            retry_max_delay_seconds=max(
                initial_delay,
                to_float(os.getenv("RETRY_MAX_DELAY_SECONDS"), 30.0),
            ),
            retry_jitter_ratio=min(1.0, max(0.0, to_float(os.getenv("RETRY_JITTER_RATIO"), 0.3))),
            verify_interval_seconds=max(0.0, to_float(os.getenv("VERIFY_INTERVAL_SECONDS"), 5.0)),
            verify_max_attempts=max(1, to_int(os.getenv("VERIFY_MAX_ATTEMPTS"), 12)),
            verify_timeout_seconds=max(1.0, to_float(os.getenv("VERIFY_TIMEOUT_SECONDS"), 60.0)),
            verify_request_timeout_seconds=max(
                1.0,
                to_float(os.getenv("VERIFY_REQUEST_TIMEOUT_SECONDS"), 12.0),
            ),
            post_payment_settle_seconds=max(0.0, to_float(os.getenv("POST_PAYMENT_SETTLE_SECONDS"), 3.0)),
            pre_mint_settle_seconds=max(0.0, to_float(os.getenv("PRE_MINT_SETTLE_SECONDS"), 2.0)),
            operation_registry_backend=normalize_backend_choice(
                os.getenv("OPERATION_REGISTRY_BACKEND", "memory")
            ),
            cache_backend=normalize_backend_choice(os.getenv("CACHE_BACKEND", "memory")),
            audit_enabled=to_bool(os.getenv("AUDIT_ENABLED"), False),
            log_level=(os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
        )

    @property
    def uses_redis(self) -> bool:
        return self.operation_registry_backend == "redis" or self.cache_backend == "redis"
