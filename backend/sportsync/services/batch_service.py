"""
backend/sportsync/services/batch_service.py

Purpose:
    Persisted audit trail for sync runs. A Batch row is created in `running`
    state, its counters are $inc'ed once per BatchItem, and it is frozen with
    a terminal status on completion. BatchItems are insert-only.

Dependencies:
    - motor / bson (via sportsync.database)
    - sportsync.models.sync
"""

from __future__ import annotations

import logging
from typing import Any

from bson import ObjectId

import sportsync.database as _db
from sportsync.config import settings
from sportsync.models.sync import (
    Batch,
    BatchItem,
    BatchItemStatus,
    BatchStatus,
    BatchTrigger,
)
from sportsync.utils import ensure_utc, utcnow

logger = logging.getLogger("sportsync.batch")


def final_status(items_failed: int, items_total: int) -> BatchStatus:
    if items_failed <= 0:
        return BatchStatus.success
    if items_total > 0 and items_failed >= items_total:
        return BatchStatus.failed
    return BatchStatus.partial_failure


def truncate_error(message: Any) -> str:
    text = str(message or "").strip() or "unknown error"
    return text[: max(1, int(settings.SYNC_ERROR_MESSAGE_MAX_CHARS))]


def _batch_from_doc(doc: dict[str, Any]) -> Batch:
    return Batch(
        id=str(doc["_id"]),
        entity_type=doc.get("entity_type") or "",
        scope=doc.get("scope") or "all",
        status=doc.get("status") or BatchStatus.running,
        trigger=doc.get("trigger") or BatchTrigger.manual,
        triggered_by=doc.get("triggered_by"),
        started_at=ensure_utc(doc["started_at"]),
        finished_at=ensure_utc(doc["finished_at"]) if doc.get("finished_at") else None,
        duration_ms=doc.get("duration_ms"),
        items_total=int(doc.get("items_total") or 0),
        items_success=int(doc.get("items_success") or 0),
        items_failed=int(doc.get("items_failed") or 0),
        first_error=doc.get("first_error"),
        meta=doc.get("meta") or {},
    )


def _item_from_doc(doc: dict[str, Any]) -> BatchItem:
    return BatchItem(
        id=str(doc["_id"]),
        batch_id=str(doc.get("batch_id")),
        item_key=str(doc.get("item_key") or ""),
        status=doc.get("status") or BatchItemStatus.failed,
        error_message=doc.get("error_message"),
        meta=doc.get("meta") or {},
        created_at=ensure_utc(doc["created_at"]),
    )


class BatchService:
    """Writes and reads sync_batches / sync_batch_items."""

    def __init__(self, database=None) -> None:
        self._database = database

    @property
    def db(self):
        database = self._database if self._database is not None else _db.db
        if database is None:
            raise RuntimeError("Database is not initialized.")
        return database

    async def start_batch(
        self,
        *,
        entity_type: str,
        scope: str,
        trigger: BatchTrigger | str,
        triggered_by: str | None,
        items_total: int,
        meta: dict[str, Any] | None = None,
    ) -> ObjectId:
        now = utcnow()
        doc = {
            "_id": ObjectId(),
            "entity_type": entity_type,
            "scope": scope,
            "status": BatchStatus.running.value,
            "trigger": BatchTrigger(trigger).value,
            "triggered_by": triggered_by,
            "started_at": now,
            "finished_at": None,
            "duration_ms": None,
            "items_total": int(items_total),
            "items_success": 0,
            "items_failed": 0,
            "first_error": None,
            "meta": meta or {},
        }
        await self.db.sync_batches.insert_one(doc)
        logger.info(
            "Sync batch %s started: entity=%s scope=%s total=%d trigger=%s",
            doc["_id"], entity_type, scope, items_total, doc["trigger"],
        )
        return doc["_id"]

    async def track_item(
        self,
        batch_id: ObjectId,
        *,
        item_key: str,
        status: BatchItemStatus,
        error_message: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """Insert one immutable BatchItem and bump the batch counters."""
        error = truncate_error(error_message) if status == BatchItemStatus.failed else None
        await self.db.sync_batch_items.insert_one(
            {
                "_id": ObjectId(),
                "batch_id": batch_id,
                "item_key": str(item_key),
                "status": status.value,
                "error_message": error,
                "meta": meta or {},
                "created_at": utcnow(),
            }
        )
        counter = "items_success" if status == BatchItemStatus.success else "items_failed"
        await self.db.sync_batches.update_one({"_id": batch_id}, {"$inc": {counter: 1}})
        if error is not None:
            await self.db.sync_batches.update_one(
                {"_id": batch_id, "first_error": None},
                {"$set": {"first_error": error}},
            )

    async def finish_batch(
        self,
        batch_id: ObjectId,
        *,
        meta: dict[str, Any] | None = None,
        status: BatchStatus | None = None,
        error: str | None = None,
    ) -> Batch:
        """Freeze the batch. Status comes from the counters unless forced (aborted runs)."""
        doc = await self.db.sync_batches.find_one({"_id": batch_id})
        if doc is None:
            raise RuntimeError(f"Sync batch {batch_id} vanished before completion.")
        now = utcnow()
        if status is None:
            status = final_status(
                int(doc.get("items_failed") or 0),
                int(doc.get("items_total") or 0),
            )
        duration_ms = int((now - ensure_utc(doc["started_at"])).total_seconds() * 1000)
        update: dict[str, Any] = {
            "status": status.value,
            "finished_at": now,
            "duration_ms": duration_ms,
        }
        if error is not None and not doc.get("first_error"):
            update["first_error"] = truncate_error(error)
            doc["first_error"] = update["first_error"]
        for key, value in (meta or {}).items():
            update[f"meta.{key}"] = value
        await self.db.sync_batches.update_one({"_id": batch_id}, {"$set": update})
        doc.update({"status": status.value, "finished_at": now, "duration_ms": duration_ms})
        doc["meta"] = {**(doc.get("meta") or {}), **(meta or {})}
        logger.info(
            "Sync batch %s finished: status=%s ok=%s fail=%s total=%s duration_ms=%d",
            batch_id, status.value, doc.get("items_success"), doc.get("items_failed"),
            doc.get("items_total"), duration_ms,
        )
        return _batch_from_doc(doc)

    async def list_batches(
        self,
        *,
        entity_type: str | None = None,
        status: BatchStatus | str | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Batch]:
        query: dict[str, Any] = {}
        if entity_type:
            query["entity_type"] = entity_type
        if status:
            query["status"] = BatchStatus(status).value
        docs = await (
            self.db.sync_batches.find(query)
            .sort("started_at", -1)
            .skip(max(0, int(skip)))
            .limit(max(1, min(int(limit), 500)))
            .to_list(length=500)
        )
        return [_batch_from_doc(doc) for doc in docs]

    async def get_batch(self, batch_id: ObjectId) -> Batch | None:
        doc = await self.db.sync_batches.find_one({"_id": batch_id})
        return _batch_from_doc(doc) if doc else None

    async def list_items(
        self,
        batch_id: ObjectId,
        *,
        status: BatchItemStatus | str | None = None,
        limit: int = 200,
        skip: int = 0,
    ) -> list[BatchItem]:
        query: dict[str, Any] = {"batch_id": batch_id}
        if status:
            query["status"] = BatchItemStatus(status).value
        docs = await (
            self.db.sync_batch_items.find(query)
            .sort("created_at", 1)
            .skip(max(0, int(skip)))
            .limit(max(1, min(int(limit), 1000)))
            .to_list(length=1000)
        )
        return [_item_from_doc(doc) for doc in docs]
