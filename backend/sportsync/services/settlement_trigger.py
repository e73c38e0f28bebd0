"""
backend/sportsync/services/settlement_trigger.py

Purpose:
    Fire-and-forget bridge to the external settlement engine. The sync engine
    only decides *when* dependent calculations are stale (an authoritative
    fixture field changed on a finished fixture); recomputation happens
    elsewhere.

Dependencies:
    - httpx (via sportsync.providers.http_client)
    - sportsync.config
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Protocol

from sportsync.config import settings
from sportsync.providers.http_client import ResilientClient
from sportsync.services.entity_registry import EntitySpec

logger = logging.getLogger("sportsync.settlement")

_background_tasks: set[asyncio.Task] = set()


class SettlementEngine(Protocol):
    async def recompute(self, affected_ids: list[str]) -> None:
        ...


class LoggingSettlementEngine:
    """Default engine when no webhook is configured: record the trigger only."""

    async def recompute(self, affected_ids: list[str]) -> None:
        logger.info("Settlement recompute requested for %d fixture(s): %s", len(affected_ids), affected_ids[:20])


class WebhookSettlementEngine:
    def __init__(self, url: str, client: ResilientClient | None = None) -> None:
        self._url = url
        self._client = client or ResilientClient(
            "settlement",
            timeout=settings.SETTLEMENT_WEBHOOK_TIMEOUT_SECONDS,
            max_retries=2,
            base_delay=1.0,
        )

    async def recompute(self, affected_ids: list[str]) -> None:
        response = await self._client.post(self._url, json={"fixture_ids": affected_ids})
        if response.status_code >= 400:
            raise RuntimeError(f"Settlement webhook returned HTTP {response.status_code}")
        logger.info("Settlement webhook accepted %d fixture(s)", len(affected_ids))


def build_settlement_engine() -> SettlementEngine:
    url = str(settings.SETTLEMENT_WEBHOOK_URL or "").strip()
    if url:
        return WebhookSettlementEngine(url)
    return LoggingSettlementEngine()


def is_settlement_relevant(spec: EntitySpec, changed_fields: Iterable[str], record: dict[str, Any]) -> bool:
    """True when an authoritative field changed and the record now sits in a settlement state.

    Cancelled or interrupted fixtures are terminal but never settle.
    """
    if not spec.override_fields or not spec.state_field:
        return False
    if not set(changed_fields) & set(spec.override_fields):
        return False
    state = str(record.get(spec.state_field) or "").strip().upper()
    return state in spec.settlement_states


async def _run_recompute(engine: SettlementEngine, affected_ids: list[str]) -> None:
    try:
        await engine.recompute(affected_ids)
    except Exception:
        logger.exception("Settlement recompute failed for %d fixture(s)", len(affected_ids))


def fire_settlement(engine: SettlementEngine, affected_ids: Iterable[Any]) -> asyncio.Task | None:
    """Schedule engine.recompute without awaiting it. Errors are logged, never raised."""
    ids = sorted({str(value) for value in affected_ids if value is not None})
    if not ids:
        return None
    task = asyncio.create_task(_run_recompute(engine, ids))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def wait_for_background_tasks() -> None:
    """Drain pending settlement triggers (shutdown, tests)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
