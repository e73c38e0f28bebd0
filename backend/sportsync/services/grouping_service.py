"""
backend/sportsync/services/grouping_service.py

Purpose:
    Collapse related unified records into display groups (odds per fixture and
    market) with worst-status propagation and deterministic ordering.

Dependencies:
    - sportsync.models.reconcile
    - sportsync.services.entity_registry
"""

from __future__ import annotations

from typing import Any, Callable, Hashable, Iterable, Mapping

from sportsync.models.reconcile import DiffStatus, GroupedRecord, UnifiedRecord
from sportsync.services.entity_registry import EntitySpec

# Highest wins: one bad child decides the group badge.
STATUS_PRIORITY: dict[DiffStatus, int] = {
    DiffStatus.mismatch: 4,
    DiffStatus.missing_in_db: 3,
    DiffStatus.extra_in_db: 2,
    DiffStatus.ok: 1,
    DiffStatus.new: 0,
}

KeyFn = Callable[[UnifiedRecord], tuple[Hashable, ...]]


def record_value(record: UnifiedRecord, field: str) -> Any:
    """Field value preferring provider data, falling back to the stored record."""
    for source in (record.provider_data, record.db_data):
        if source is not None and source.get(field) is not None:
            return source.get(field)
    return None


def fields_key_fn(key_fields: Iterable[str]) -> KeyFn:
    fields = tuple(key_fields)

    def _key(record: UnifiedRecord) -> tuple[Hashable, ...]:
        parts: list[Hashable] = []
        for field in fields:
            value = record_value(record, field)
            parts.append(None if value is None else str(value))
        return tuple(parts)

    return _key


def _sortable(value: Any) -> tuple[int, Any]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def group(
    unified: Iterable[UnifiedRecord],
    key_fn: KeyFn,
    priority: Mapping[DiffStatus, int] = STATUS_PRIORITY,
    *,
    display_fields: Iterable[str] = (),
    sort_field: str | None = None,
    descending: bool = False,
) -> list[GroupedRecord]:
    """Group unified records by a structured composite key.

    Output is ordered by ``sort_field`` (missing values last), ties and the
    unsorted case keep first-seen key order.
    """
    display = tuple(display_fields)
    buckets: dict[tuple[Hashable, ...], list[UnifiedRecord]] = {}
    for record in unified:
        buckets.setdefault(key_fn(record), []).append(record)

    groups: list[GroupedRecord] = []
    for composite_key, children in buckets.items():
        status = max((child.status for child in children), key=lambda s: priority.get(s, -1))
        shown: dict[str, Any] = {}
        for field in display:
            shown[field] = next(
                (value for value in (record_value(child, field) for child in children) if value is not None),
                None,
            )
        sort_value = None
        if sort_field:
            sort_value = next(
                (value for value in (record_value(child, sort_field) for child in children) if value is not None),
                None,
            )
        groups.append(
            GroupedRecord(
                composite_key=composite_key,
                status=status,
                children=children,
                child_count=len(children),
                display=shown,
                sort_value=sort_value,
            )
        )

    if sort_field:
        present = [g for g in groups if g.sort_value is not None]
        absent = [g for g in groups if g.sort_value is None]
        present.sort(key=lambda g: _sortable(g.sort_value), reverse=descending)
        groups = present + absent
    return groups


def group_for_entity(spec: EntitySpec, unified: Iterable[UnifiedRecord]) -> list[GroupedRecord] | None:
    if spec.group is None:
        return None
    return group(
        unified,
        fields_key_fn(spec.group.key_fields),
        display_fields=spec.group.display_fields,
        sort_field=spec.group.sort_field,
        descending=spec.group.descending,
    )
