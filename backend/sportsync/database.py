"""
backend/sportsync/database.py

Purpose:
    MongoDB connection bootstrap and index management for the reference-data
    collections and the sync audit trail.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - sportsync.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, OperationFailure

from sportsync.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("sportsync.database")

_ENTITY_COLLECTIONS = (
    "countries",
    "leagues",
    "seasons",
    "teams",
    "fixtures",
    "odds",
    "bookmakers",
)


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Reference entities: upserts key exclusively on external_id ----
    for name in _ENTITY_COLLECTIONS:
        try:
            await db[name].create_index("external_id", unique=True)
        except (DuplicateKeyError, OperationFailure) as exc:
            logger.warning(
                "Skipped unique external_id index on %s due to duplicate data: %s",
                name,
                exc,
            )
            await db[name].create_index("external_id", name="external_id_lookup")

    await db.leagues.create_index("country_id")
    await db.seasons.create_index([("league_id", 1), ("is_current", -1)])
    await db.teams.create_index("country_id")
    await db.fixtures.create_index([("league_id", 1), ("starting_at", -1)])
    await db.fixtures.create_index([("state", 1), ("starting_at", -1)])
    await db.fixtures.create_index("season_id")
    await db.fixtures.create_index("score_overridden_at", sparse=True)
    await db.odds.create_index([("fixture_id", 1), ("market_external_id", 1)])
    await db.odds.create_index("fixture_external_id")

    # ---- Sync audit trail (insert + counter updates only, never deleted) ----
    await db.sync_batches.create_index([("entity_type", 1), ("started_at", -1)])
    await db.sync_batches.create_index([("status", 1), ("started_at", -1)])
    await db.sync_batch_items.create_index([("batch_id", 1), ("status", 1)])
    await db.sync_batch_items.create_index([("batch_id", 1), ("created_at", 1)])

    # ---- Named sync locks (_id is the lock key) ----
    await db.sync_locks.create_index("acquired_at")

    # ---- Audit ----
    await db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
    await db.audit_logs.create_index([("target_id", 1), ("timestamp", -1)])

    logger.info("MongoDB indexes ensured")
