"""
backend/sportsync/services/unify_service.py

Purpose:
    Generic provider-vs-database unifier. Keys both record sets by external id,
    classifies every distinct key into exactly one diff status and keeps the
    unequal fields for mismatches. Pure and synchronous.

Dependencies:
    - sportsync.services.field_normalizer
    - sportsync.models.reconcile
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from sportsync.models.reconcile import DiffStatus, UnifiedRecord
from sportsync.services.entity_registry import FieldSpec
from sportsync.services.field_normalizer import compare_fields, resolve_key

logger = logging.getLogger("sportsync.unify")

_DISPLAY_SEVERITY: dict[DiffStatus, int] = {
    DiffStatus.missing_in_db: 1,
    DiffStatus.mismatch: 2,
    DiffStatus.extra_in_db: 3,
    DiffStatus.new: 4,
    DiffStatus.ok: 5,
}


def _index_by_key(records: Iterable[dict[str, Any]], side: str) -> dict[str, dict[str, Any]]:
    indexed: dict[str, dict[str, Any]] = {}
    invalid = 0
    duplicates = 0
    for record in records:
        key = resolve_key(record)
        if key is None:
            invalid += 1
            continue
        if key in indexed:
            duplicates += 1
            continue
        indexed[key] = record
    if invalid:
        logger.warning("Excluded %d %s record(s) without a valid external_id", invalid, side)
    if duplicates:
        logger.warning("Dropped %d duplicate %s record(s) by external_id", duplicates, side)
    return indexed


def unify(
    provider_records: Iterable[dict[str, Any]],
    db_records: Iterable[dict[str, Any]],
    field_specs: Iterable[FieldSpec],
) -> list[UnifiedRecord]:
    """Merge both sides into one UnifiedRecord per distinct valid key.

    Provider order is preserved; database-only keys follow in database order.
    """
    specs = tuple(field_specs)
    provider_by_key = _index_by_key(provider_records, "provider")
    db_by_key = _index_by_key(db_records, "database")

    unified: list[UnifiedRecord] = []
    consumed: set[str] = set()
    for key, provider in provider_by_key.items():
        db = db_by_key.get(key)
        if db is None:
            unified.append(
                UnifiedRecord(
                    external_id=key,
                    status=DiffStatus.missing_in_db,
                    provider_data=provider,
                )
            )
            continue
        consumed.add(key)
        unequal = [diff for diff in compare_fields(provider, db, specs) if not diff.equal]
        unified.append(
            UnifiedRecord(
                external_id=key,
                status=DiffStatus.mismatch if unequal else DiffStatus.ok,
                db_data=db,
                provider_data=provider,
                field_diffs=unequal,
            )
        )

    for key, db in db_by_key.items():
        if key in consumed:
            continue
        unified.append(UnifiedRecord(external_id=key, status=DiffStatus.extra_in_db, db_data=db))
    return unified


def _numeric_key(external_id: str) -> tuple[int, int, str]:
    digits = external_id.lstrip("-")
    if digits.isascii() and digits.isdigit():
        return (0, int(external_id), "")
    return (1, 0, external_id)


def sort_for_display(records: Iterable[UnifiedRecord]) -> list[UnifiedRecord]:
    """Problems first (missing, mismatch, extra), then ok; numeric id within a status."""
    return sorted(
        records,
        key=lambda record: (_DISPLAY_SEVERITY.get(record.status, 99), _numeric_key(record.external_id)),
    )
