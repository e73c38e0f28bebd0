"""
backend/sportsync/services/field_normalizer.py

Purpose:
    Key canonicalization and type-aware field comparison shared by the unifier,
    repository and sync orchestrator. Provider payloads and Mongo documents
    disagree on types (int vs str ids, naive vs aware datetimes, "2:1" vs
    "2-1" results); everything is normalized here before strict equality.

Dependencies:
    - sportsync.services.entity_registry
    - sportsync.utils
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Iterable

from sportsync.models.reconcile import FieldDiff
from sportsync.services.entity_registry import FieldSpec
from sportsync.utils import ensure_utc, parse_utc

logger = logging.getLogger("sportsync.field_normalizer")

_MISSING = object()


def resolve_key(record: dict[str, Any] | None, key_field: str = "external_id") -> str | None:
    """Canonical string key for a record, or None when the id is unusable.

    1, 1.0, "1" and " 1 " all resolve to "1". None, blanks, booleans and
    non-integral floats are invalid.
    """
    if not isinstance(record, dict):
        return None
    return canonical_key(record.get(key_field))


def canonical_key(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return str(int(value))
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isascii() and text.lstrip("-").isdigit():
        return str(int(text))
    return text


def _is_blank(value: Any) -> bool:
    return value is None or value is _MISSING or (isinstance(value, str) and not value.strip())


def _epoch(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return ensure_utc(value).timestamp()
    if isinstance(value, date):
        return parse_utc(value.isoformat()).timestamp()
    try:
        return parse_utc(str(value)).timestamp()
    except ValueError:
        return None


def _number(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        return text


def _boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    return text


def _date_only(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return parse_utc(text).date().isoformat()
    except ValueError:
        return text


def normalize_value(value: Any, spec: FieldSpec) -> Any:
    """Normalized comparison form of a single field value."""
    if value is _MISSING:
        value = None
    if spec.blank_as_null and _is_blank(value):
        return None
    if value is None:
        return None
    kind = spec.kind
    if kind == "timestamp":
        epoch = _epoch(value)
        return epoch if epoch is not None else str(value).strip()
    if kind == "date":
        return _date_only(value)
    if kind == "number":
        return _number(value)
    if kind == "bool":
        return _boolean(value)
    text = value.strip() if isinstance(value, str) else str(value).strip()
    if kind == "code":
        return text.upper()
    if kind == "result":
        return text.replace(":", "-")
    return text


def fields_equal(provider_value: Any, db_value: Any, spec: FieldSpec) -> bool:
    return normalize_value(provider_value, spec) == normalize_value(db_value, spec)


def compare_fields(
    provider: dict[str, Any],
    db: dict[str, Any],
    field_specs: Iterable[FieldSpec],
) -> list[FieldDiff]:
    """One FieldDiff per declared field, raw values preserved for display."""
    diffs: list[FieldDiff] = []
    for spec in field_specs:
        provider_value = provider.get(spec.name, _MISSING)
        db_value = db.get(spec.name, _MISSING)
        equal = fields_equal(provider_value, db_value, spec)
        diffs.append(
            FieldDiff(
                field=spec.name,
                db_value=None if db_value is _MISSING else db_value,
                provider_value=None if provider_value is _MISSING else provider_value,
                equal=equal,
            )
        )
    return diffs


def coerce_for_storage(value: Any, spec: FieldSpec) -> Any:
    """Value as written to Mongo: timestamps become aware UTC datetimes."""
    if spec.blank_as_null and _is_blank(value):
        return None
    if value is None:
        return None
    if spec.kind == "timestamp" and not isinstance(value, datetime):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        try:
            return parse_utc(str(value))
        except ValueError:
            logger.warning("Unparseable timestamp for %s: %r", spec.name, value)
            return value
    if spec.kind == "timestamp":
        return ensure_utc(value)
    if spec.kind in ("text", "code", "result") and isinstance(value, str):
        return value.strip()
    return value
