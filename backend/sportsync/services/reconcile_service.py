"""
backend/sportsync/services/reconcile_service.py

Purpose:
    Read path for diff views. Validates the request, fetches provider and
    local records concurrently, and degrades to a partial view when one side
    fails instead of failing the whole request.

Dependencies:
    - asyncio
    - sportsync.services.unify_service / diff_stats_service / grouping_service
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sportsync.models.reconcile import ReconcileView, SourceAvailability
from sportsync.providers.base import ProviderClient
from sportsync.services.diff_stats_service import compute_diff_stats
from sportsync.services.entity_registry import get_entity_spec, validate_filters
from sportsync.services.entity_repository import EntityRepository
from sportsync.services.grouping_service import group_for_entity
from sportsync.services.unify_service import sort_for_display, unify

logger = logging.getLogger("sportsync.reconcile")


class DataSourcesUnavailableError(RuntimeError):
    """Neither the provider nor the local store could be read."""

    def __init__(self, provider_error: str, database_error: str) -> None:
        self.provider_error = provider_error
        self.database_error = database_error
        super().__init__(
            f"Both data sources failed. provider: {provider_error}; database: {database_error}"
        )


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class ReconcileService:
    def __init__(self, provider: ProviderClient, repository: EntityRepository | None = None) -> None:
        self.provider = provider
        self.repository = repository or EntityRepository()

    async def load_view(self, entity_type: str, filters: dict[str, Any] | None = None) -> ReconcileView:
        spec = get_entity_spec(entity_type)
        clean_filters = validate_filters(spec, filters)

        provider_result, db_result = await asyncio.gather(
            self.provider.fetch(spec.entity_type, clean_filters),
            self.repository.list(spec.entity_type, clean_filters),
            return_exceptions=True,
        )

        provider_state = SourceAvailability()
        database_state = SourceAvailability()
        provider_records: list[dict[str, Any]] = []
        db_records: list[dict[str, Any]] = []
        if isinstance(provider_result, BaseException):
            provider_state = SourceAvailability(available=False, error=_describe(provider_result))
            logger.warning("Provider fetch failed for %s: %s", spec.entity_type, provider_state.error)
        else:
            provider_records = provider_result
        if isinstance(db_result, BaseException):
            database_state = SourceAvailability(available=False, error=_describe(db_result))
            logger.warning("Local store read failed for %s: %s", spec.entity_type, database_state.error)
        else:
            db_records = db_result

        if not provider_state.available and not database_state.available:
            raise DataSourcesUnavailableError(provider_state.error or "", database_state.error or "")

        unified = unify(provider_records, db_records, spec.fields)
        return ReconcileView(
            entity_type=spec.entity_type,
            filters=clean_filters,
            records=sort_for_display(unified),
            stats=compute_diff_stats(unified),
            groups=group_for_entity(spec, unified),
            provider=provider_state,
            database=database_state,
            partial=not (provider_state.available and database_state.available),
        )
