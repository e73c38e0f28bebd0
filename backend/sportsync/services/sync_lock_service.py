"""
backend/sportsync/services/sync_lock_service.py

Purpose:
    Named lock guaranteeing at most one running sync batch per
    (entity_type, scope). Two layers:
    - an asyncio.Lock per key for runs inside this process (fails fast,
      never waits)
    - the `sync_locks` collection across processes, where the lock key is the
      document _id so a second insert fails with DuplicateKeyError
    Holders refresh `acquired_at` while they run; locks not refreshed for
    SYNC_LOCK_STALE_MINUTES are treated as abandoned and taken over.

Dependencies:
    - pymongo.errors.DuplicateKeyError
    - sportsync.config
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator

from pymongo.errors import DuplicateKeyError

import sportsync.database as _db
from sportsync.config import settings
from sportsync.utils import utcnow

logger = logging.getLogger("sportsync.sync_lock")


class SyncAlreadyRunningError(RuntimeError):
    """Raised when another sync already holds the lock for the same scope."""

    def __init__(self, lock_key: str, holder: dict[str, Any] | None = None) -> None:
        self.lock_key = lock_key
        self.holder = holder or {}
        super().__init__(f"A sync is already running for {lock_key}.")


def lock_key(entity_type: str, scope: str) -> str:
    return f"sync:{entity_type}:{scope}"


class SyncLockService:
    def __init__(self, database=None) -> None:
        self._database = database
        self._local: dict[str, asyncio.Lock] = {}
        self._tokens: dict[str, str] = {}

    @property
    def db(self):
        database = self._database if self._database is not None else _db.db
        if database is None:
            raise RuntimeError("Database is not initialized.")
        return database

    async def _holder_of(self, key: str) -> dict[str, Any]:
        return await self.db.sync_locks.find_one({"_id": key}) or {}

    async def acquire(self, entity_type: str, scope: str, *, holder: str | None = None) -> str:
        """Take the lock or raise SyncAlreadyRunningError. Returns the owner token."""
        key = lock_key(entity_type, scope)
        local = self._local.setdefault(key, asyncio.Lock())
        if local.locked():
            existing = await self._holder_of(key)
            logger.info("Sync lock %s is held in this process by %s", key, existing.get("holder"))
            raise SyncAlreadyRunningError(key, existing)
        await local.acquire()

        try:
            now = utcnow()
            stale_before = now - timedelta(minutes=max(1, int(settings.SYNC_LOCK_STALE_MINUTES)))
            expired = await self.db.sync_locks.delete_one({"_id": key, "acquired_at": {"$lt": stale_before}})
            if getattr(expired, "deleted_count", 0):
                logger.warning("Took over stale sync lock %s", key)

            token = uuid.uuid4().hex
            try:
                await self.db.sync_locks.insert_one(
                    {
                        "_id": key,
                        "owner": token,
                        "holder": holder,
                        "entity_type": entity_type,
                        "scope": scope,
                        "acquired_at": now,
                    }
                )
            except DuplicateKeyError as exc:
                existing = await self._holder_of(key)
                logger.info("Sync lock %s is held by %s", key, existing.get("holder"))
                raise SyncAlreadyRunningError(key, existing) from exc
        except BaseException:
            local.release()
            raise
        self._tokens[key] = token
        return token

    async def refresh(self, entity_type: str, scope: str, token: str) -> bool:
        """Keep a held lock fresh. False means another run has taken it over."""
        key = lock_key(entity_type, scope)
        result = await self.db.sync_locks.update_one(
            {"_id": key, "owner": token},
            {"$set": {"acquired_at": utcnow()}},
        )
        if not getattr(result, "matched_count", 0):
            logger.error("Sync lock %s is no longer owned by token %s", key, token[:8])
            return False
        return True

    async def release(self, entity_type: str, scope: str, token: str) -> None:
        key = lock_key(entity_type, scope)
        try:
            result = await self.db.sync_locks.delete_one({"_id": key, "owner": token})
            if not getattr(result, "deleted_count", 0):
                logger.warning("Sync lock %s was not held by token %s at release", key, token[:8])
        finally:
            local = self._local.get(key)
            if self._tokens.get(key) == token and local is not None and local.locked():
                del self._tokens[key]
                local.release()

    @asynccontextmanager
    async def hold(self, entity_type: str, scope: str, *, holder: str | None = None) -> AsyncIterator[str]:
        token = await self.acquire(entity_type, scope, holder=holder)
        try:
            yield token
        finally:
            await self.release(entity_type, scope, token)
