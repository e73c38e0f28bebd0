"""Reconciliation read-view models: unified records, diff stats and groups.

None of these are persisted; every view is recomputed per request.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class DiffStatus(str, Enum):
    ok = "ok"
    missing_in_db = "missing-in-db"
    extra_in_db = "extra-in-db"
    mismatch = "mismatch"
    new = "new"  # reserved, never produced by unify()


class FieldDiff(BaseModel):
    field: str
    db_value: Any = None
    provider_value: Any = None
    equal: bool


class UnifiedRecord(BaseModel):
    """Merged DB + provider view of one entity instance."""

    external_id: str
    status: DiffStatus
    db_data: Optional[dict[str, Any]] = None
    provider_data: Optional[dict[str, Any]] = None
    field_diffs: list[FieldDiff] = Field(default_factory=list)


class DiffStats(BaseModel):
    db_count: int = 0
    provider_count: int = 0
    ok: int = 0
    missing: int = 0
    extra: int = 0
    mismatch: int = 0


class GroupedRecord(BaseModel):
    composite_key: tuple[Any, ...]
    status: DiffStatus
    children: list[UnifiedRecord] = Field(default_factory=list)
    child_count: int = 0
    display: dict[str, Any] = Field(default_factory=dict)
    sort_value: Any = None


class SourceAvailability(BaseModel):
    available: bool = True
    error: Optional[str] = None


class ReconcileView(BaseModel):
    """Everything a diff page needs for one entity type and filter set."""

    entity_type: str
    filters: dict[str, Any] = Field(default_factory=dict)
    records: list[UnifiedRecord] = Field(default_factory=list)
    stats: DiffStats = Field(default_factory=DiffStats)
    groups: Optional[list[GroupedRecord]] = None
    provider: SourceAvailability = Field(default_factory=SourceAvailability)
    database: SourceAvailability = Field(default_factory=SourceAvailability)
    partial: bool = False
