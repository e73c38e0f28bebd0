"""
backend/sportsync/services/sync_orchestrator.py

Purpose:
    Write path of the reconciliation engine. Runs one audited, lock-protected
    sync batch per (entity_type, scope): fetches provider records, selects the
    requested subset, upserts each record in its own short write with a
    per-item timeout, records a BatchItem per attempt and keeps going on
    per-item failures. Operator-overridden fields are never overwritten
    without explicit confirmation. Finished fixtures whose authoritative
    fields changed trigger the settlement engine once per batch.

Dependencies:
    - asyncio
    - sportsync.services.batch_service / sync_lock_service / entity_repository
    - sportsync.services.settlement_trigger
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sportsync.config import settings
from sportsync.models.reconcile import DiffStatus
from sportsync.models.sync import (
    BatchItemStatus,
    BatchStatus,
    BatchTrigger,
    OverrideConflict,
    SyncPreview,
    SyncPreviewItem,
    SyncResult,
    SyncSelection,
)
from sportsync.providers.base import ProviderClient
from sportsync.services.batch_service import BatchService
from sportsync.services.entity_registry import (
    EntitySpec,
    get_entity_spec,
    scope_key,
    validate_filters,
)
from sportsync.services.entity_repository import (
    EntityRepository,
    RecordValidationError,
    UnresolvedForeignKeyError,
    UpsertOutcome,
)
from sportsync.services.field_normalizer import canonical_key, fields_equal, resolve_key
from sportsync.services.settlement_trigger import (
    SettlementEngine,
    build_settlement_engine,
    fire_settlement,
    is_settlement_relevant,
)
from sportsync.services.sync_lock_service import SyncLockService
from sportsync.services.unify_service import unify
from sportsync.utils import ensure_utc

logger = logging.getLogger("sportsync.sync")

CANCELLED_MESSAGE = "cancelled before processing"
LOCK_LOST_MESSAGE = "sync lock lost before processing"


class ProviderFetchError(RuntimeError):
    """The provider could not deliver records for a sync run."""


@dataclass
class WorkList:
    items: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    invalid: int = 0
    duplicates: int = 0
    not_in_provider: list[str] = field(default_factory=list)


@dataclass
class OverridePlan:
    conflicts: dict[str, dict[str, Any]] = field(default_factory=dict)
    skip_fields: list[str] = field(default_factory=list)
    unset_fields: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> dict[str, dict[str, Any]]:
        return {name: diff for name, diff in self.conflicts.items() if name in self.skip_fields}

    @property
    def applied(self) -> dict[str, dict[str, Any]]:
        return {name: diff for name, diff in self.conflicts.items() if name not in self.skip_fields}


def plan_override(
    spec: EntitySpec,
    existing: dict[str, Any] | None,
    record: dict[str, Any],
    confirmed: Iterable[str] = (),
) -> OverridePlan:
    """Decide which overridden fields a sync may write.

    Differing override fields are skipped unless confirmed. The override
    marker is cleared only once every differing field has been confirmed.
    """
    if not spec.supports_override or existing is None or not existing.get(spec.override_marker):
        return OverridePlan()
    accepted = set(confirmed)
    conflicts: dict[str, dict[str, Any]] = {}
    for name in spec.override_fields:
        field_spec = spec.field_spec(name)
        if field_spec is None:
            continue
        if not fields_equal(record.get(name), existing.get(name), field_spec):
            conflicts[name] = {"old": existing.get(name), "new": record.get(name)}
    skip = [name for name in conflicts if name not in accepted]
    unset: list[str] = []
    if conflicts and not skip:
        unset = [name for name in (spec.override_marker, spec.override_actor_field) if name]
    return OverridePlan(conflicts=conflicts, skip_fields=skip, unset_fields=unset)


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class SyncOrchestrator:
    def __init__(
        self,
        provider: ProviderClient,
        *,
        repository: EntityRepository | None = None,
        batches: BatchService | None = None,
        locks: SyncLockService | None = None,
        settlement: SettlementEngine | None = None,
    ) -> None:
        self.provider = provider
        self.repository = repository or EntityRepository()
        self.batches = batches or BatchService()
        self.locks = locks or SyncLockService()
        self.settlement = settlement or build_settlement_engine()
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ---------- selection ----------

    async def _fetch_provider(self, spec: EntitySpec, filters: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            return await self.provider.fetch(spec.entity_type, filters)
        except Exception as exc:
            logger.error("Provider fetch failed for %s %s: %s", spec.entity_type, filters, exc)
            raise ProviderFetchError(f"Provider fetch failed for {spec.entity_type}: {_describe(exc)}") from exc

    async def _build_work_list(
        self,
        spec: EntitySpec,
        provider_records: list[dict[str, Any]],
        selection: SyncSelection,
    ) -> WorkList:
        work = WorkList()
        seen: set[str] = set()
        for record in provider_records:
            key = resolve_key(record)
            if key is None:
                work.invalid += 1
                continue
            if key in seen:
                work.duplicates += 1
                continue
            seen.add(key)
            work.items.append((key, record))
        if work.invalid:
            logger.warning("Sync %s: skipped %d provider record(s) without a valid id", spec.entity_type, work.invalid)
        if work.duplicates:
            logger.warning("Sync %s: skipped %d duplicate provider record(s)", spec.entity_type, work.duplicates)

        if selection.external_ids:
            wanted = {key for key in (canonical_key(value) for value in selection.external_ids) if key is not None}
            work.items = [(key, record) for key, record in work.items if key in wanted]
            work.not_in_provider = sorted(wanted - seen)
            if work.not_in_provider:
                logger.warning(
                    "Sync %s: %d requested id(s) not returned by provider: %s",
                    spec.entity_type, len(work.not_in_provider), work.not_in_provider[:20],
                )

        if selection.statuses:
            wanted_statuses = set(selection.statuses)
            existing = await self.repository.find_many_by_external_ids(
                spec.entity_type, [key for key, _ in work.items]
            )
            statuses = {
                unified.external_id: unified.status
                for unified in unify([record for _, record in work.items], list(existing.values()), spec.fields)
            }
            work.items = [(key, record) for key, record in work.items if statuses.get(key) in wanted_statuses]
        return work

    # ---------- batch run ----------

    def cancel(self, batch_id: str) -> bool:
        """Signal a running batch to stop after its in-flight item."""
        event = self._cancel_events.get(str(batch_id))
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for sync batch %s", batch_id)
        return True

    def running_batches(self) -> list[str]:
        return sorted(self._cancel_events)

    async def sync_entities(
        self,
        entity_type: str,
        selection: SyncSelection | None = None,
        filters: dict[str, Any] | None = None,
        trigger: BatchTrigger | str = BatchTrigger.manual,
        triggered_by: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncResult:
        spec = get_entity_spec(entity_type)
        clean_filters = validate_filters(spec, filters)
        scope = scope_key(spec, clean_filters)
        selection = selection or SyncSelection()

        async with self.locks.hold(spec.entity_type, scope, holder=triggered_by) as token:
            provider_records = await self._fetch_provider(spec, clean_filters)
            work = await self._build_work_list(spec, provider_records, selection)

            batch_id = await self.batches.start_batch(
                entity_type=spec.entity_type,
                scope=scope,
                trigger=trigger,
                triggered_by=triggered_by,
                items_total=len(work.items),
                meta={
                    "filters": clean_filters,
                    "provider_count": len(provider_records),
                    "invalid_ids": work.invalid,
                    "duplicates": work.duplicates,
                    "not_in_provider": work.not_in_provider[:100],
                    "statuses": [status.value for status in selection.statuses],
                },
            )
            event = cancel_event or asyncio.Event()
            self._cancel_events[str(batch_id)] = event
            try:
                settlement_ids, stopped = await self._run_items(
                    spec, batch_id, work, selection, event, scope=scope, token=token
                )
            except BaseException as exc:
                await self._abort_batch(batch_id, exc)
                raise
            finally:
                self._cancel_events.pop(str(batch_id), None)

            batch = await self.batches.finish_batch(
                batch_id,
                meta={
                    "cancelled": stopped == "cancelled",
                    "lock_lost": stopped == "lock_lost",
                    "settlement_ids": len(settlement_ids),
                },
            )

        triggered = fire_settlement(self.settlement, settlement_ids) is not None
        if triggered:
            logger.info("Sync batch %s triggered settlement for %d fixture(s)", batch.id, len(settlement_ids))
        return SyncResult(
            batch_id=batch.id,
            ok=batch.items_success,
            fail=batch.items_failed,
            total=batch.items_total,
            status=batch.status,
            first_error=batch.first_error,
            settlement_triggered=triggered,
        )

    async def _abort_batch(self, batch_id: Any, exc: BaseException) -> None:
        """Freeze a batch whose run raised, so no row is left `running`."""
        logger.error("Sync batch %s aborted: %s", batch_id, _describe(exc))
        try:
            await self.batches.finish_batch(
                batch_id,
                status=BatchStatus.failed,
                error=_describe(exc),
                meta={"aborted": _describe(exc)},
            )
        except Exception:
            logger.exception("Could not mark aborted sync batch %s as failed", batch_id)

    async def _fail_remaining(
        self,
        batch_id: Any,
        remaining: list[tuple[str, dict[str, Any]]],
        message: str,
        meta: dict[str, Any],
    ) -> None:
        for key, _ in remaining:
            await self.batches.track_item(
                batch_id,
                item_key=key,
                status=BatchItemStatus.failed,
                error_message=message,
                meta=meta,
            )

    async def _run_items(
        self,
        spec: EntitySpec,
        batch_id: Any,
        work: WorkList,
        selection: SyncSelection,
        event: asyncio.Event,
        *,
        scope: str,
        token: str,
    ) -> tuple[list[Any], str | None]:
        """Process the work list. Returns settlement ids and why the run stopped early, if it did."""
        fk_cache: dict[tuple[str, str], Any] = {}
        settlement_ids: list[Any] = []
        chunk_size = max(1, int(settings.SYNC_CHUNK_SIZE))
        total = len(work.items)
        for position, (key, record) in enumerate(work.items):
            if event.is_set():
                remaining = work.items[position:]
                logger.warning("Sync batch %s cancelled with %d item(s) unprocessed", batch_id, len(remaining))
                await self._fail_remaining(batch_id, remaining, CANCELLED_MESSAGE, {"cancelled": True})
                return settlement_ids, "cancelled"
            outcome = await self._sync_item(spec, batch_id, key, record, selection, fk_cache)
            if outcome is not None and outcome.written and is_settlement_relevant(
                spec, outcome.changed_fields, outcome.record
            ):
                settlement_ids.append(outcome.record.get("_id"))
            done = position + 1
            if done % chunk_size == 0 or done == total:
                logger.info("Sync batch %s progress %d/%d", batch_id, done, total)
            if done % chunk_size == 0 and done < total:
                if not await self.locks.refresh(spec.entity_type, scope, token):
                    remaining = work.items[done:]
                    logger.error("Sync batch %s lost its lock with %d item(s) unprocessed", batch_id, len(remaining))
                    await self._fail_remaining(batch_id, remaining, LOCK_LOST_MESSAGE, {"lock_lost": True})
                    return settlement_ids, "lock_lost"
        return settlement_ids, None

    async def _sync_item(
        self,
        spec: EntitySpec,
        batch_id: Any,
        key: str,
        record: dict[str, Any],
        selection: SyncSelection,
        fk_cache: dict[tuple[str, str], Any],
    ) -> UpsertOutcome | None:
        confirmed = selection.confirmed_overrides.get(key, [])
        timeout = float(settings.SYNC_ITEM_TIMEOUT_SECONDS)
        try:
            outcome, meta = await asyncio.wait_for(
                self._apply_item(spec, key, record, confirmed, fk_cache),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = f"Timed out after {timeout:g}s"
        except (UnresolvedForeignKeyError, RecordValidationError) as exc:
            error = str(exc)
        except Exception as exc:
            error = _describe(exc)
        else:
            await self.batches.track_item(batch_id, item_key=key, status=BatchItemStatus.success, meta=meta)
            return outcome

        logger.warning("Sync %s item %s failed: %s", spec.entity_type, key, error)
        await self.batches.track_item(batch_id, item_key=key, status=BatchItemStatus.failed, error_message=error)
        return None

    async def _apply_item(
        self,
        spec: EntitySpec,
        key: str,
        record: dict[str, Any],
        confirmed: Iterable[str],
        fk_cache: dict[tuple[str, str], Any],
    ) -> tuple[UpsertOutcome, dict[str, Any]]:
        existing = await self.repository.find_by_external_id(spec.entity_type, key)
        plan = plan_override(spec, existing, record, confirmed)
        outcome = await self.repository.upsert(
            spec.entity_type,
            record,
            existing=existing,
            skip_fields=plan.skip_fields,
            unset_fields=plan.unset_fields,
            fk_cache=fk_cache,
        )
        if outcome.created:
            action = "created"
        elif outcome.changed_fields:
            action = "updated"
        else:
            action = "unchanged"
        meta: dict[str, Any] = {"action": action, "changed_fields": outcome.changed_fields}
        if plan.skipped:
            meta["override_skipped"] = plan.skipped
            logger.info(
                "Sync %s item %s kept operator override for %s",
                spec.entity_type, key, sorted(plan.skipped),
            )
        if plan.applied:
            meta["override_applied"] = plan.applied
        return outcome, meta

    # ---------- read-only helpers ----------

    async def find_override_conflicts(
        self,
        entity_type: str,
        filters: dict[str, Any] | None = None,
        external_ids: Iterable[Any] = (),
    ) -> list[OverrideConflict]:
        """Before/after diff of overridden fields a sync would change."""
        spec = get_entity_spec(entity_type)
        clean_filters = validate_filters(spec, filters)
        if not spec.supports_override:
            return []
        provider_records = await self._fetch_provider(spec, clean_filters)
        work = await self._build_work_list(spec, provider_records, SyncSelection(external_ids=[str(v) for v in external_ids]))
        existing = await self.repository.find_many_by_external_ids(spec.entity_type, [key for key, _ in work.items])
        conflicts: list[OverrideConflict] = []
        for key, record in work.items:
            doc = existing.get(key)
            plan = plan_override(spec, doc, record)
            if not plan.conflicts:
                continue
            overridden_at = doc.get(spec.override_marker)
            conflicts.append(
                OverrideConflict(
                    external_id=key,
                    internal_id=str(doc.get("_id")),
                    overridden_at=ensure_utc(overridden_at) if isinstance(overridden_at, datetime) else None,
                    overridden_by=doc.get(spec.override_actor_field) if spec.override_actor_field else None,
                    fields=plan.conflicts,
                )
            )
        return conflicts

    async def preview_sync(
        self,
        entity_type: str,
        selection: SyncSelection | None = None,
        filters: dict[str, Any] | None = None,
    ) -> SyncPreview:
        """Dry run: same selection as sync_entities, no lock, no batch, no writes."""
        spec = get_entity_spec(entity_type)
        clean_filters = validate_filters(spec, filters)
        selection = selection or SyncSelection()
        provider_records = await self._fetch_provider(spec, clean_filters)
        work = await self._build_work_list(spec, provider_records, selection)
        existing = await self.repository.find_many_by_external_ids(spec.entity_type, [key for key, _ in work.items])

        fk_cache: dict[tuple[str, str], Any] = {}
        items: list[SyncPreviewItem] = []
        for key, record in work.items:
            try:
                doc = self.repository.build_document(spec, record)
                await self.repository.resolve_foreign_keys(spec, record, fk_cache)
            except (RecordValidationError, UnresolvedForeignKeyError) as exc:
                items.append(SyncPreviewItem(external_id=key, action="invalid", error=str(exc)))
                continue
            current = existing.get(key)
            plan = plan_override(spec, current, record, selection.confirmed_overrides.get(key, []))
            for name in plan.skip_fields:
                doc.pop(name, None)
            changed = self.repository.changed_fields(spec, doc, current)
            if current is None:
                action = "create"
            elif plan.skip_fields:
                action = "conflict"
            elif changed or plan.unset_fields:
                action = "update"
            else:
                action = "unchanged"
            items.append(
                SyncPreviewItem(
                    external_id=key,
                    action=action,
                    changed_fields=changed,
                    conflict_fields=list(plan.skip_fields),
                )
            )
        for _ in range(work.invalid):
            items.append(SyncPreviewItem(action="invalid", error="Record has no valid external_id."))

        summary: dict[str, int] = {}
        for item in items:
            summary[item.action] = summary.get(item.action, 0) + 1
        return SyncPreview(
            entity_type=spec.entity_type,
            scope=scope_key(spec, clean_filters),
            total=len(work.items),
            items=items,
            summary=summary,
        )


def selection_statuses(values: Iterable[str]) -> list[DiffStatus]:
    """Parse status names from CLI/query input, rejecting unknown ones."""
    statuses: list[DiffStatus] = []
    for value in values:
        try:
            statuses.append(DiffStatus(str(value).strip()))
        except ValueError as exc:
            raise ValueError(f"Unknown diff status '{value}'.") from exc
    return statuses
