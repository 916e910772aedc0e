from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from landtoken.common import guarded_call, log_event

from .helpers import doc_id_from_text as _doc_id_from_text


class FirestoreStorageOps:
    async def record_tokenization_run(self, *, run_id: str, status: str, payload: dict[str, Any]) -> None:
        if self._firestore is None or self._runs_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="audit_skipped",
                message="Skipping tokenization audit because Firestore client is not ready",
                run_id=run_id,
            )
            return

        document = {
            "run_id": run_id,
            "status": status,
            "env": self.settings.app_env,
            "details": payload,
            "payment_ref": payload.get("payment_ref"),
            "parcel_id": payload.get("parcel_id") or (payload.get("parcel_record") or {}).get("id"),
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        run_ref = self._runs_collection_ref.document(_doc_id_from_text(run_id))
        await asyncio.to_thread(run_ref.set, document, merge=True)
        await self.publish_event(
            level="error" if status == "critical_partial_failure" else "info",
            event=f"tokenization_{status}",
            message=f"Tokenization run {run_id} {status.replace('_', ' ')}",
            details={"run_id": run_id, "payment_ref": document["payment_ref"]},
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self._firestore is None or self._events_collection_ref is None:
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "env": self.settings.app_env,
        }
        if details:
            payload["details"] = details

        await guarded_call(
            lambda: asyncio.to_thread(self._events_collection_ref.add, payload),
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )
