"""
backend/tests/test_admin_sync_router.py

Purpose:
    Admin sync router contract: error-to-status mapping, dry-run switch, batch
    history reads and fixture override input handling.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from bson import ObjectId
from fastapi import HTTPException

from _fake_mongo import FakeDB
from sportsync.models.reconcile import DiffStatus
from sportsync.models.sync import BatchItemStatus, BatchStatus, BatchTrigger, SyncPreview, SyncResult
from sportsync.providers.base import ProviderClient
from sportsync.routers import admin_sync as admin_router
from sportsync.services import entity_repository as repo_module
from sportsync.services.batch_service import BatchService
from sportsync.services.entity_registry import InvalidFilterError
from sportsync.services.fixture_override_service import FixtureOverrideService
from sportsync.services.reconcile_service import DataSourcesUnavailableError
from sportsync.services.settlement_trigger import wait_for_background_tasks
from sportsync.services.sync_lock_service import SyncAlreadyRunningError
from sportsync.services.sync_orchestrator import ProviderFetchError


class _Provider(ProviderClient):
    def __init__(self, records=None) -> None:
        self.records = list(records or [])

    async def fetch(self, entity_type, filters):
        return list(self.records)


class _Orchestrator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple] = []
        self.cancelled: list[str] = []

    async def sync_entities(self, entity_type, selection, filters, trigger, triggered_by):
        self.calls.append(("sync", entity_type, selection, filters, trigger, triggered_by))
        if self.error is not None:
            raise self.error
        return SyncResult(batch_id="b1", ok=2, fail=1, total=3, status=BatchStatus.partial_failure, first_error="x")

    async def preview_sync(self, entity_type, selection, filters):
        self.calls.append(("preview", entity_type, selection, filters))
        return SyncPreview(entity_type=entity_type, scope="all")

    async def find_override_conflicts(self, entity_type, filters, external_ids=()):
        if self.error is not None:
            raise self.error
        return []

    def cancel(self, batch_id):
        if batch_id == "65f1a2b3c4d5e6f708192a3b":
            self.cancelled.append(batch_id)
            return True
        return False


def _request(**params):
    return SimpleNamespace(query_params=params)


@pytest.mark.asyncio
async def test_sync_passes_selection_and_api_trigger(monkeypatch):
    orchestrator = _Orchestrator()
    monkeypatch.setattr(admin_router, "get_orchestrator", lambda: orchestrator)
    body = admin_router.SyncRequest(
        filters={"country_external_id": 462},
        external_ids=["1"],
        statuses=[DiffStatus.mismatch],
        triggered_by="alice",
    )

    result = await admin_router.sync_entity_type("leagues", body)

    assert (result.ok, result.fail, result.total) == (2, 1, 3)
    _, entity_type, selection, filters, trigger, triggered_by = orchestrator.calls[0]
    assert entity_type == "leagues"
    assert selection.external_ids == ["1"]
    assert selection.statuses == [DiffStatus.mismatch]
    assert filters == {"country_external_id": 462}
    assert trigger == BatchTrigger.api
    assert triggered_by == "alice"


@pytest.mark.asyncio
async def test_dry_run_uses_preview(monkeypatch):
    orchestrator = _Orchestrator()
    monkeypatch.setattr(admin_router, "get_orchestrator", lambda: orchestrator)

    result = await admin_router.sync_entity_type("countries", admin_router.SyncRequest(dry_run=True))

    assert isinstance(result, SyncPreview)
    assert orchestrator.calls[0][0] == "preview"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (InvalidFilterError("bad filter"), 400),
        (SyncAlreadyRunningError("sync:countries:all", {"holder": "bob"}), 409),
        (ProviderFetchError("provider down"), 502),
    ],
)
async def test_sync_error_mapping(monkeypatch, error, status_code):
    monkeypatch.setattr(admin_router, "get_orchestrator", lambda: _Orchestrator(error))

    with pytest.raises(HTTPException) as exc_info:
        await admin_router.sync_entity_type("countries", admin_router.SyncRequest())

    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_running_sync_conflict_names_lock_and_holder(monkeypatch):
    error = SyncAlreadyRunningError("sync:countries:all", {"holder": "bob"})
    monkeypatch.setattr(admin_router, "get_orchestrator", lambda: _Orchestrator(error))

    with pytest.raises(HTTPException) as exc_info:
        await admin_router.sync_entity_type("countries", admin_router.SyncRequest())

    assert exc_info.value.detail["lock_key"] == "sync:countries:all"
    assert exc_info.value.detail["holder"] == "bob"


@pytest.mark.asyncio
async def test_diff_reads_filters_from_query(monkeypatch):
    db = FakeDB()
    db.leagues.docs.append({"_id": 1, "external_id": 82, "name": "Bundesliga", "country_external_id": 11})
    monkeypatch.setattr(repo_module._db, "db", db, raising=False)
    monkeypatch.setattr(admin_router, "get_provider", lambda: _Provider([{"external_id": 82, "name": "Bundesliga"}]))

    view = await admin_router.get_diff("leagues", _request(country_external_id="11", ignored=""))

    assert view.filters == {"country_external_id": 11}
    assert [record.status for record in view.records] == [DiffStatus.ok]


@pytest.mark.asyncio
async def test_diff_error_mapping(monkeypatch):
    with pytest.raises(HTTPException) as exc_info:
        await admin_router.get_diff("players", _request())
    assert exc_info.value.status_code == 400

    class _FailingService:
        async def load_view(self, entity_type, filters):
            raise DataSourcesUnavailableError("HTTP 503", "mongo down")

    monkeypatch.setattr(admin_router, "get_reconcile_service", lambda: _FailingService())
    with pytest.raises(HTTPException) as exc_info:
        await admin_router.get_diff("countries", _request())
    assert exc_info.value.status_code == 502
    assert exc_info.value.detail["provider_error"] == "HTTP 503"


@pytest.mark.asyncio
async def test_batch_history_endpoints(monkeypatch):
    db = FakeDB()
    service = BatchService(database=db)
    monkeypatch.setattr(admin_router, "get_batch_service", lambda: service)
    batch_id = await service.start_batch(
        entity_type="teams", scope="all", trigger="manual", triggered_by=None, items_total=1
    )
    await service.track_item(batch_id, item_key="7", status=BatchItemStatus.failed, error_message="boom")
    await service.finish_batch(batch_id)

    batches = await admin_router.list_batches(entity_type="teams", batch_status=None, limit=50, skip=0)
    assert [batch.id for batch in batches] == [str(batch_id)]
    assert batches[0].status == BatchStatus.failed

    batch = await admin_router.get_batch(str(batch_id))
    assert batch.first_error == "boom"

    items = await admin_router.list_batch_items(str(batch_id), item_status="failed", limit=200, skip=0)
    assert [item.item_key for item in items] == ["7"]

    with pytest.raises(HTTPException) as exc_info:
        await admin_router.get_batch(str(ObjectId()))
    assert exc_info.value.status_code == 404
    with pytest.raises(HTTPException) as exc_info:
        await admin_router.get_batch("nope")
    assert exc_info.value.status_code == 400
    with pytest.raises(HTTPException) as exc_info:
        await admin_router.list_batches(entity_type=None, batch_status="exploded", limit=50, skip=0)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_cancel_batch(monkeypatch):
    orchestrator = _Orchestrator()
    monkeypatch.setattr(admin_router, "get_orchestrator", lambda: orchestrator)

    response = await admin_router.cancel_batch("65f1a2b3c4d5e6f708192a3b")
    assert response.cancelled is True
    assert orchestrator.cancelled == ["65f1a2b3c4d5e6f708192a3b"]

    with pytest.raises(HTTPException) as exc_info:
        await admin_router.cancel_batch(str(ObjectId()))
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_override_conflicts_provider_failure(monkeypatch):
    monkeypatch.setattr(admin_router, "get_orchestrator", lambda: _Orchestrator(ProviderFetchError("down")))

    with pytest.raises(HTTPException) as exc_info:
        await admin_router.get_override_conflicts(
            "fixtures", admin_router.OverrideConflictsRequest(filters={"from": "2025-03-01", "to": "2025-03-01"})
        )

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_fixture_override_endpoint(monkeypatch):
    fixture_id = ObjectId()
    db = FakeDB()
    db.fixtures.docs.append(
        {"_id": fixture_id, "external_id": 5, "name": "A vs B", "state": "LIVE", "home_score": 1, "away_score": 0}
    )

    class _Settlement:
        async def recompute(self, affected_ids):
            return None

    service = FixtureOverrideService(database=db, settlement=_Settlement())
    monkeypatch.setattr(admin_router, "get_override_service", lambda: service)

    body = admin_router.FixtureOverrideRequest(actor_id="ops", state="ft")
    response = await admin_router.override_fixture(str(fixture_id), body, request=None)

    assert response["state"] == "FT"
    assert response["score_overridden_by"] == "ops"
    assert response["id"] == str(fixture_id)
    await wait_for_background_tasks()

    with pytest.raises(HTTPException) as exc_info:
        await admin_router.override_fixture(str(ObjectId()), body, request=None)
    assert exc_info.value.status_code == 404
    with pytest.raises(HTTPException) as exc_info:
        await admin_router.override_fixture("bad-id", body, request=None)
    assert exc_info.value.status_code == 400
    with pytest.raises(HTTPException) as exc_info:
        await admin_router.override_fixture(
            str(fixture_id), admin_router.FixtureOverrideRequest(actor_id="ops", state="later"), request=None
        )
    assert exc_info.value.status_code == 400
