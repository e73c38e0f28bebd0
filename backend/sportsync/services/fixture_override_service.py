"""
backend/sportsync/services/fixture_override_service.py

Purpose:
    Manual operator override of a fixture's state/result/score. Stamps the
    override marker that routine sync respects, writes an audit entry with the
    per-field {old, new} diff and triggers settlement when a terminal
    fixture's authoritative fields changed.

Dependencies:
    - bson.ObjectId
    - sportsync.services.audit_service
    - sportsync.services.settlement_trigger
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from bson import ObjectId
from fastapi import Request

import sportsync.database as _db
from sportsync.models.sync import FixtureOverrideBody
from sportsync.services.audit_service import log_audit
from sportsync.services.entity_registry import get_entity_spec
from sportsync.services.field_normalizer import coerce_for_storage, fields_equal
from sportsync.services.settlement_trigger import (
    SettlementEngine,
    build_settlement_engine,
    fire_settlement,
    is_settlement_relevant,
)
from sportsync.utils import utcnow

logger = logging.getLogger("sportsync.fixture_override")

OVERRIDE_AUDIT_ACTION = "FIXTURE_SCORE_OVERRIDE"
FIXTURE_STATES = frozenset({"NS", "LIVE", "FT", "CAN", "INT"})


class FixtureNotFoundError(LookupError):
    """No local fixture with the given internal id."""


def _derive_result(home_score: Any, away_score: Any) -> str | None:
    if home_score is None or away_score is None:
        return None
    return f"{int(home_score)}-{int(away_score)}"


class FixtureOverrideService:
    def __init__(self, database=None, settlement: SettlementEngine | None = None) -> None:
        self._database = database
        self.settlement = settlement or build_settlement_engine()

    @property
    def db(self):
        database = self._database if self._database is not None else _db.db
        if database is None:
            raise RuntimeError("Database is not initialized.")
        return database

    async def apply_override(
        self,
        fixture_id: str,
        body: FixtureOverrideBody,
        actor_id: str,
        request: Optional[Request] = None,
    ) -> dict[str, Any]:
        """Apply operator-provided values and return the updated fixture document.

        Raises bson.errors.InvalidId for malformed ids and FixtureNotFoundError
        for unknown fixtures.
        """
        spec = get_entity_spec("fixtures")
        oid = ObjectId(fixture_id)
        fixture = await self.db[spec.collection].find_one({"_id": oid})
        if fixture is None:
            raise FixtureNotFoundError(f"Fixture {fixture_id} not found.")

        requested = body.model_dump(exclude_unset=True)
        if requested.get("state") is not None:
            state = str(requested["state"]).strip().upper()
            if state not in FIXTURE_STATES:
                raise ValueError(f"Unknown fixture state '{state}'.")
            requested["state"] = state
        if ("home_score" in requested or "away_score" in requested) and "result" not in requested:
            derived = _derive_result(
                requested.get("home_score", fixture.get("home_score")),
                requested.get("away_score", fixture.get("away_score")),
            )
            if derived is not None:
                requested["result"] = derived

        changes: dict[str, dict[str, Any]] = {}
        updates: dict[str, Any] = {}
        for name, value in requested.items():
            field_spec = spec.field_spec(name)
            if field_spec is None or name not in spec.override_fields:
                continue
            stored = coerce_for_storage(value, field_spec)
            if fields_equal(stored, fixture.get(name), field_spec):
                continue
            changes[name] = {"old": fixture.get(name), "new": stored}
            updates[name] = stored

        if not changes:
            logger.info("Fixture override for %s changed nothing", fixture_id)
            return fixture

        now = utcnow()
        updates.update(
            {
                spec.override_marker: now,
                spec.override_actor_field: actor_id,
                "updated_at": now,
            }
        )
        await self.db[spec.collection].update_one({"_id": oid}, {"$set": updates})
        updated = {**fixture, **updates}

        await log_audit(
            actor_id=actor_id,
            target_id=str(oid),
            action=OVERRIDE_AUDIT_ACTION,
            metadata={"external_id": fixture.get("external_id"), "changes": changes},
            request=request,
            database=self.db,
        )
        logger.info("Fixture %s overridden by %s: %s", fixture_id, actor_id, sorted(changes))

        if is_settlement_relevant(spec, changes.keys(), updated):
            fire_settlement(self.settlement, [oid])
        return updated
