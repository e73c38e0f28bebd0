"""Sync batch audit models and request/response bodies for sync operations."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from sportsync.models.reconcile import DiffStatus


# ---------- Batch audit trail ----------

class BatchStatus(str, Enum):
    running = "running"
    success = "success"
    partial_failure = "partial_failure"
    failed = "failed"


class BatchTrigger(str, Enum):
    manual = "manual"
    cli = "cli"
    scheduler = "scheduler"
    api = "api"


class BatchItemStatus(str, Enum):
    success = "success"
    failed = "failed"


class Batch(BaseModel):
    """One audited sync run against an entity type and scope."""
    id: str
    entity_type: str
    scope: str
    status: BatchStatus
    trigger: BatchTrigger
    triggered_by: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    items_total: int = 0
    items_success: int = 0
    items_failed: int = 0
    first_error: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class BatchItem(BaseModel):
    """Outcome of syncing a single record. Immutable once written."""
    id: str
    batch_id: str
    item_key: str
    status: BatchItemStatus
    error_message: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# ---------- Sync requests ----------

class SyncSelection(BaseModel):
    """Which provider records a sync run should touch.

    Empty ``external_ids`` and ``statuses`` select every valid record in scope.
    ``confirmed_overrides`` maps an external id to the overridden field names
    the operator accepted after reviewing the before/after diff.
    """
    external_ids: list[str] = Field(default_factory=list)
    statuses: list[DiffStatus] = Field(default_factory=list)
    confirmed_overrides: dict[str, list[str]] = Field(default_factory=dict)


class SyncResult(BaseModel):
    batch_id: str
    ok: int
    fail: int
    total: int
    status: BatchStatus
    first_error: Optional[str] = None
    settlement_triggered: bool = False


class OverrideConflict(BaseModel):
    """Fields a sync would change on an operator-overridden record."""
    external_id: str
    internal_id: Optional[str] = None
    overridden_at: Optional[datetime] = None
    overridden_by: Optional[str] = None
    fields: dict[str, dict[str, Any]] = Field(default_factory=dict)  # {field: {old, new}}


class SyncPreviewItem(BaseModel):
    external_id: Optional[str] = None
    action: str  # create | update | unchanged | conflict | invalid
    changed_fields: list[str] = Field(default_factory=list)
    conflict_fields: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class SyncPreview(BaseModel):
    entity_type: str
    scope: str
    total: int = 0
    items: list[SyncPreviewItem] = Field(default_factory=list)
    summary: dict[str, int] = Field(default_factory=dict)


class FixtureOverrideBody(BaseModel):
    state: Optional[str] = None
    result: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
