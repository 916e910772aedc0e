from __future__ import annotations

import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from landtoken.common import log_event

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    def __init__(
        self,
        settings: StorageSettings,
        logger: logging.Logger,
        *,
        use_redis: bool = True,
        use_firestore: bool = True,
    ) -> None:
        self.settings = settings
        self._logger = logger
        self._use_redis = use_redis
        self._use_firestore = use_firestore
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._runs_collection_ref: Any | None = None
        self._events_collection_ref: Any | None = None

    async def connect(self) -> None:
        if self._use_redis:
            self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
            await self._redis.ping()
            log_event(
                self._logger,
                level="info",
                event="redis_connected",
                message="Connected to Redis",
            )

        if self._use_firestore:
            firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
            if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
                os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

            self._firestore = firestore.Client(project=self.settings.firestore_project_id)
            self._runs_collection_ref = self._firestore.collection(self.settings.runs_collection)
            self._events_collection_ref = self._firestore.collection(self.settings.events_collection)
            log_event(
                self._logger,
                level="info",
                event="firestore_connected",
                message="Connected to Firestore",
                runs_collection=self.settings.runs_collection,
            )

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("StorageGateway Redis client is not connected.")
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

        self._runs_collection_ref = None
        self._events_collection_ref = None
        self._firestore = None
