from __future__ import annotations

from typing import Iterable

from sportsync.models.reconcile import DiffStats, DiffStatus, UnifiedRecord

_BUCKETS: dict[DiffStatus, str] = {
    DiffStatus.ok: "ok",
    DiffStatus.missing_in_db: "missing",
    DiffStatus.extra_in_db: "extra",
    DiffStatus.mismatch: "mismatch",
}


def compute_diff_stats(unified: Iterable[UnifiedRecord]) -> DiffStats:
    """Single-pass summary counts for a unified record list."""
    counts = {"db_count": 0, "provider_count": 0, "ok": 0, "missing": 0, "extra": 0, "mismatch": 0}
    for record in unified:
        if record.db_data is not None:
            counts["db_count"] += 1
        if record.provider_data is not None:
            counts["provider_count"] += 1
        bucket = _BUCKETS.get(record.status)
        if bucket is not None:
            counts[bucket] += 1
    return DiffStats(**counts)
