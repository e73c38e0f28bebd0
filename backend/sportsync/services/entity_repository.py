"""
backend/sportsync/services/entity_repository.py

Purpose:
    Mongo-backed repository for the reconciled reference entities. Reads are
    keyset-paged; writes are single-document upserts keyed exclusively on
    external_id with $set/$setOnInsert semantics, so repeated calls with
    identical input neither duplicate rows nor rewrite unchanged documents.
    Foreign keys (league external id -> internal _id, ...) are resolved before
    writing through a caller-provided per-run cache.

Dependencies:
    - motor (via sportsync.database)
    - sportsync.services.entity_registry
    - sportsync.services.field_normalizer
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable

import sportsync.database as _db
from sportsync.config import settings
from sportsync.services.entity_registry import EntitySpec, get_entity_spec
from sportsync.services.field_normalizer import (
    canonical_key,
    coerce_for_storage,
    fields_equal,
    resolve_key,
)
from sportsync.utils import utcnow

logger = logging.getLogger("sportsync.entity_repository")

_UNSET: Any = object()

ForeignKeyCache = dict[tuple[str, str], Any]


class UnresolvedForeignKeyError(LookupError):
    """A referenced entity is not present in the local store."""


class RecordValidationError(ValueError):
    """A provider record cannot be persisted as-is."""


@dataclass
class UpsertOutcome:
    record: dict[str, Any]
    created: bool
    changed_fields: list[str] = field(default_factory=list)
    previous: dict[str, Any] | None = None

    @property
    def written(self) -> bool:
        return self.created or bool(self.changed_fields)


def storage_key(key: str) -> int | str:
    """Stored representation of a canonical key: ints stay ints."""
    digits = key.lstrip("-")
    if digits.isascii() and digits.isdigit():
        return int(key)
    return key


def _day_start(value: str) -> datetime:
    return datetime.combine(date.fromisoformat(value), time.min, tzinfo=timezone.utc)


def build_list_query(spec: EntitySpec, filters: dict[str, Any]) -> dict[str, Any]:
    query: dict[str, Any] = {}
    for name, value in (filters or {}).items():
        filter_spec = spec.filters.get(name)
        if filter_spec is None:
            continue
        if filter_spec.op == "gte_day":
            query.setdefault(filter_spec.local_field, {})["$gte"] = _day_start(value)
        elif filter_spec.op == "lte_day":
            query.setdefault(filter_spec.local_field, {})["$lt"] = _day_start(value) + timedelta(days=1)
        else:
            query[filter_spec.local_field] = value
    return query


class EntityRepository:
    """Repository over the per-entity Mongo collections."""

    def __init__(self, database=None) -> None:
        self._database = database

    @property
    def db(self):
        database = self._database if self._database is not None else _db.db
        if database is None:
            raise RuntimeError("Database is not initialized.")
        return database

    def _collection(self, spec: EntitySpec):
        return self.db[spec.collection]

    async def list(self, entity_type: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """All local records matching the (validated) filters, read page by page."""
        spec = get_entity_spec(entity_type)
        query = build_list_query(spec, filters or {})
        page_size = max(1, int(settings.REPOSITORY_PAGE_SIZE))
        rows: list[dict[str, Any]] = []
        last_id = None
        while True:
            page_query = dict(query)
            if last_id is not None:
                page_query["_id"] = {"$gt": last_id}
            page = await (
                self._collection(spec).find(page_query).sort("_id", 1).limit(page_size).to_list(length=page_size)
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            last_id = page[-1]["_id"]
        return rows

    async def find_by_external_id(self, entity_type: str, external_id: Any) -> dict[str, Any] | None:
        spec = get_entity_spec(entity_type)
        key = canonical_key(external_id)
        if key is None:
            return None
        return await self._collection(spec).find_one({"external_id": storage_key(key)})

    async def find_many_by_external_ids(self, entity_type: str, external_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        spec = get_entity_spec(entity_type)
        keys = [storage_key(key) for key in external_ids]
        if not keys:
            return {}
        docs = await self._collection(spec).find({"external_id": {"$in": keys}}).to_list(length=None)
        found: dict[str, dict[str, Any]] = {}
        for doc in docs:
            key = resolve_key(doc)
            if key is not None:
                found[key] = doc
        return found

    async def get_by_id(self, entity_type: str, internal_id: Any) -> dict[str, Any] | None:
        spec = get_entity_spec(entity_type)
        return await self._collection(spec).find_one({"_id": internal_id})

    def build_document(self, spec: EntitySpec, record: dict[str, Any]) -> dict[str, Any]:
        """Validated, storage-ready document without resolved foreign keys."""
        key = resolve_key(record)
        if key is None:
            raise RecordValidationError("Record has no valid external_id.")
        doc: dict[str, Any] = {"external_id": storage_key(key)}
        for field_spec in spec.fields:
            value = coerce_for_storage(record.get(field_spec.name), field_spec)
            if field_spec.required and (value is None or (isinstance(value, str) and not value)):
                raise RecordValidationError(f"Field '{field_spec.name}' is required (external_id={key}).")
            if field_spec.kind == "timestamp" and value is not None and not isinstance(value, datetime):
                raise RecordValidationError(
                    f"Field '{field_spec.name}' is not a valid timestamp: {value!r} (external_id={key})."
                )
            doc[field_spec.name] = value
        for name in spec.stored_fields:
            doc[name] = record.get(name)
        for fk in spec.foreign_keys:
            ref = canonical_key(record.get(fk.source_field))
            doc[fk.source_field] = storage_key(ref) if ref is not None else None
        return doc

    async def resolve_foreign_keys(
        self,
        spec: EntitySpec,
        record: dict[str, Any],
        cache: ForeignKeyCache | None = None,
    ) -> dict[str, Any]:
        cache = cache if cache is not None else {}
        resolved: dict[str, Any] = {}
        for fk in spec.foreign_keys:
            ref = canonical_key(record.get(fk.source_field))
            if ref is None:
                if fk.required:
                    raise UnresolvedForeignKeyError(f"Missing {fk.source_field} for {spec.entity_type} record.")
                resolved[fk.local_field] = None
                continue
            cache_key = (fk.target_entity, ref)
            if cache_key not in cache:
                target = get_entity_spec(fk.target_entity)
                hit = await self._collection(target).find_one({"external_id": storage_key(ref)}, {"_id": 1})
                cache[cache_key] = hit["_id"] if hit else None
            internal_id = cache[cache_key]
            if internal_id is None and fk.required:
                raise UnresolvedForeignKeyError(
                    f"Unresolved {fk.source_field}={ref}: no {fk.target_entity} row with that external_id."
                )
            resolved[fk.local_field] = internal_id
        return resolved

    @staticmethod
    def changed_fields(spec: EntitySpec, doc: dict[str, Any], existing: dict[str, Any] | None) -> list[str]:
        if existing is None:
            return [name for name in doc if name != "external_id"]
        changed: list[str] = []
        for name, value in doc.items():
            if name == "external_id":
                continue
            field_spec = spec.field_spec(name)
            if field_spec is not None:
                if not fields_equal(value, existing.get(name), field_spec):
                    changed.append(name)
            elif existing.get(name) != value:
                changed.append(name)
        return changed

    async def upsert(
        self,
        entity_type: str,
        record: dict[str, Any],
        *,
        existing: dict[str, Any] | None = _UNSET,
        skip_fields: Iterable[str] = (),
        unset_fields: Iterable[str] = (),
        fk_cache: ForeignKeyCache | None = None,
    ) -> UpsertOutcome:
        """Insert or update one record keyed on external_id.

        ``skip_fields`` are left untouched on existing rows; ``unset_fields``
        are removed when present. Unchanged rows are not written.
        """
        spec = get_entity_spec(entity_type)
        doc = self.build_document(spec, record)
        doc.update(await self.resolve_foreign_keys(spec, record, fk_cache))
        collection = self._collection(spec)
        if existing is _UNSET:
            existing = await collection.find_one({"external_id": doc["external_id"]})

        skip = set(skip_fields)
        if existing is not None:
            for name in skip:
                doc.pop(name, None)
        to_unset = [name for name in unset_fields if existing is not None and name in existing]
        changed = self.changed_fields(spec, doc, existing)
        now = utcnow()

        if existing is None:
            result = await collection.update_one(
                {"external_id": doc["external_id"]},
                {"$set": {**doc, "updated_at": now}, "$setOnInsert": {"created_at": now}},
                upsert=True,
            )
            stored = {"_id": getattr(result, "upserted_id", None), **doc, "created_at": now, "updated_at": now}
            return UpsertOutcome(record=stored, created=True, changed_fields=changed, previous=None)

        if not changed and not to_unset:
            return UpsertOutcome(record=dict(existing), created=False, changed_fields=[], previous=existing)

        update: dict[str, Any] = {"$set": {**{name: doc[name] for name in changed}, "updated_at": now}}
        if to_unset:
            update["$unset"] = {name: "" for name in to_unset}
        await collection.update_one({"_id": existing["_id"]}, update)
        stored = {**existing, **{name: doc[name] for name in changed}, "updated_at": now}
        for name in to_unset:
            stored.pop(name, None)
        return UpsertOutcome(
            record=stored,
            created=False,
            changed_fields=changed + [name for name in to_unset if name not in changed],
            previous=existing,
        )
