from __future__ import annotations

import os
from dataclasses import dataclass

from landtoken.runtime.settings import to_int


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    operation_guard_prefix: str
    operation_guard_ttl_seconds: int
    cache_prefix: str
    firestore_project_id: str | None
    runs_collection: str
    events_collection: str
    app_env: str

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            operation_guard_prefix=(os.getenv("REDIS_OPERATION_GUARD_PREFIX", "ops:guard").strip(":") or "ops:guard"),
            operation_guard_ttl_seconds=max(
                1,
                to_int(os.getenv("REDIS_OPERATION_GUARD_TTL_SECONDS"), 300),
            ),
            cache_prefix=(os.getenv("REDIS_CACHE_PREFIX", "cache").strip(":") or "cache"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            runs_collection=(os.getenv("FIRESTORE_RUNS_COLLECTION", "tokenization_runs").strip("/") or "tokenization_runs"),
            events_collection=(
                os.getenv("FIRESTORE_EVENTS_COLLECTION", "tokenization_events").strip("/") or "tokenization_events"
            ),
            app_env=os.getenv("APP_ENV", "dev"),
        )
