"""
backend/sportsync/routers/admin_sync.py

Purpose:
    Thin admin HTTP adapter over the reconciliation engine: diff views, sync
    runs (and dry runs), override confirmation, batch history, cancellation
    and manual fixture overrides. Maps core errors to HTTP status codes.

Dependencies:
    - sportsync.services.reconcile_service
    - sportsync.services.sync_orchestrator
    - sportsync.services.batch_service
    - sportsync.services.fixture_override_service
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from sportsync.models.reconcile import DiffStatus, ReconcileView
from sportsync.models.sync import (
    Batch,
    BatchItem,
    BatchTrigger,
    FixtureOverrideBody,
    OverrideConflict,
    SyncPreview,
    SyncResult,
    SyncSelection,
)
from sportsync.providers.base import ProviderClient
from sportsync.providers.sportmonks import SportmonksProvider
from sportsync.services.batch_service import BatchService
from sportsync.services.entity_registry import InvalidFilterError, UnknownEntityTypeError
from sportsync.services.fixture_override_service import FixtureNotFoundError, FixtureOverrideService
from sportsync.services.reconcile_service import DataSourcesUnavailableError, ReconcileService
from sportsync.services.sync_lock_service import SyncAlreadyRunningError
from sportsync.services.sync_orchestrator import ProviderFetchError, SyncOrchestrator

router = APIRouter(prefix="/api/admin/sync", tags=["admin-sync"])
logger = logging.getLogger("sportsync.admin_sync")

_provider: ProviderClient | None = None
_orchestrator: SyncOrchestrator | None = None


def get_provider() -> ProviderClient:
    global _provider
    if _provider is None:
        _provider = SportmonksProvider()
    return _provider


def get_orchestrator() -> SyncOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator(get_provider())
    return _orchestrator


def get_reconcile_service() -> ReconcileService:
    return ReconcileService(get_provider())


def get_batch_service() -> BatchService:
    return BatchService()


def get_override_service() -> FixtureOverrideService:
    return FixtureOverrideService()


class SyncRequest(BaseModel):
    filters: dict[str, Any] = Field(default_factory=dict)
    external_ids: list[str] = Field(default_factory=list)
    statuses: list[DiffStatus] = Field(default_factory=list)
    confirmed_overrides: dict[str, list[str]] = Field(default_factory=dict)
    dry_run: bool = False
    triggered_by: Optional[str] = None


class OverrideConflictsRequest(BaseModel):
    filters: dict[str, Any] = Field(default_factory=dict)
    external_ids: list[str] = Field(default_factory=list)


class FixtureOverrideRequest(FixtureOverrideBody):
    actor_id: str


class CancelResponse(BaseModel):
    batch_id: str
    cancelled: bool


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _parse_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid ID.") from exc


def _query_filters(request: Request) -> dict[str, Any]:
    return {key: value for key, value in request.query_params.items() if value != ""}


@router.get("/batches", response_model=list[Batch])
async def list_batches(
    entity_type: Optional[str] = Query(None),
    batch_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
):
    try:
        return await get_batch_service().list_batches(
            entity_type=entity_type, status=batch_status, limit=limit, skip=skip
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc


@router.get("/batches/{batch_id}", response_model=Batch)
async def get_batch(batch_id: str):
    batch = await get_batch_service().get_batch(_parse_object_id(batch_id))
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found.")
    return batch


@router.get("/batches/{batch_id}/items", response_model=list[BatchItem])
async def list_batch_items(
    batch_id: str,
    item_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=1000),
    skip: int = Query(0, ge=0),
):
    oid = _parse_object_id(batch_id)
    try:
        return await get_batch_service().list_items(oid, status=item_status, limit=limit, skip=skip)
    except ValueError as exc:
        raise _bad_request(exc) from exc


@router.post("/batches/{batch_id}/cancel", response_model=CancelResponse)
async def cancel_batch(batch_id: str):
    _parse_object_id(batch_id)
    if not get_orchestrator().cancel(batch_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No running batch with this id.")
    return CancelResponse(batch_id=batch_id, cancelled=True)


@router.patch("/fixtures/{fixture_id}/override")
async def override_fixture(fixture_id: str, body: FixtureOverrideRequest, request: Request = None):
    values = FixtureOverrideBody(**body.model_dump(exclude_unset=True, exclude={"actor_id"}))
    try:
        fixture = await get_override_service().apply_override(
            fixture_id, values, actor_id=body.actor_id, request=request
        )
    except InvalidId as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid ID.") from exc
    except FixtureNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "id": str(fixture["_id"]),
        "external_id": fixture.get("external_id"),
        "state": fixture.get("state"),
        "result": fixture.get("result"),
        "home_score": fixture.get("home_score"),
        "away_score": fixture.get("away_score"),
        "score_overridden_at": fixture.get("score_overridden_at"),
        "score_overridden_by": fixture.get("score_overridden_by"),
    }


@router.get("/{entity_type}/diff", response_model=ReconcileView)
async def get_diff(entity_type: str, request: Request):
    try:
        return await get_reconcile_service().load_view(entity_type, _query_filters(request))
    except (UnknownEntityTypeError, InvalidFilterError) as exc:
        raise _bad_request(exc) from exc
    except DataSourcesUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "detail": "Both data sources are unavailable.",
                "provider_error": exc.provider_error,
                "database_error": exc.database_error,
            },
        ) from exc


@router.post("/{entity_type}/override-conflicts", response_model=list[OverrideConflict])
async def get_override_conflicts(entity_type: str, body: OverrideConflictsRequest):
    try:
        return await get_orchestrator().find_override_conflicts(
            entity_type, body.filters, external_ids=body.external_ids
        )
    except (UnknownEntityTypeError, InvalidFilterError) as exc:
        raise _bad_request(exc) from exc
    except ProviderFetchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.post("/{entity_type}", response_model=SyncResult | SyncPreview)
async def sync_entity_type(entity_type: str, body: SyncRequest):
    selection = SyncSelection(
        external_ids=body.external_ids,
        statuses=body.statuses,
        confirmed_overrides=body.confirmed_overrides,
    )
    orchestrator = get_orchestrator()
    try:
        if body.dry_run:
            return await orchestrator.preview_sync(entity_type, selection, body.filters)
        return await orchestrator.sync_entities(
            entity_type,
            selection,
            body.filters,
            trigger=BatchTrigger.api,
            triggered_by=body.triggered_by,
        )
    except (UnknownEntityTypeError, InvalidFilterError) as exc:
        raise _bad_request(exc) from exc
    except SyncAlreadyRunningError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "detail": "A sync is already running for this entity type and scope.",
                "lock_key": exc.lock_key,
                "holder": exc.holder.get("holder"),
            },
        ) from exc
    except ProviderFetchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
