"""
backend/tests/test_sync_lock_service.py

Purpose:
    Named sync lock: one holder per (entity_type, scope) inside the process
    and across processes, release by owner token only, refresh by the live
    holder, stale lock takeover.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from _fake_mongo import FakeDB
from sportsync.services import sync_lock_service as lock_module
from sportsync.services.sync_lock_service import SyncAlreadyRunningError, SyncLockService, lock_key
from sportsync.utils import utcnow


@pytest.mark.asyncio
async def test_second_acquire_for_same_scope_fails_fast():
    db = FakeDB()
    locks = SyncLockService(database=db)

    await locks.acquire("fixtures", "from=2025-03-01,to=2025-03-01", holder="alice")

    with pytest.raises(SyncAlreadyRunningError) as exc_info:
        await locks.acquire("fixtures", "from=2025-03-01,to=2025-03-01", holder="bob")

    assert exc_info.value.lock_key == "sync:fixtures:from=2025-03-01,to=2025-03-01"
    assert exc_info.value.holder["holder"] == "alice"


@pytest.mark.asyncio
async def test_different_scopes_do_not_block_each_other():
    locks = SyncLockService(database=FakeDB())

    await locks.acquire("leagues", "all")
    await locks.acquire("leagues", "country_external_id=462")
    await locks.acquire("teams", "all")


@pytest.mark.asyncio
async def test_hold_releases_on_error():
    db = FakeDB()
    locks = SyncLockService(database=db)

    with pytest.raises(RuntimeError, match="boom"):
        async with locks.hold("countries", "all"):
            assert await db.sync_locks.find_one({"_id": lock_key("countries", "all")}) is not None
            raise RuntimeError("boom")

    assert db.sync_locks.docs == []
    async with locks.hold("countries", "all"):
        pass


@pytest.mark.asyncio
async def test_release_with_foreign_token_keeps_lock():
    db = FakeDB()
    locks = SyncLockService(database=db)
    await locks.acquire("countries", "all")

    await locks.release("countries", "all", "not-the-owner")

    assert len(db.sync_locks.docs) == 1


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(lock_module.settings, "SYNC_LOCK_STALE_MINUTES", 30)
    db.sync_locks.docs.append(
        {
            "_id": lock_key("countries", "all"),
            "owner": "crashed-worker",
            "holder": "cron",
            "acquired_at": utcnow() - timedelta(hours=2),
        }
    )
    locks = SyncLockService(database=db)

    token = await locks.acquire("countries", "all", holder="alice")

    assert db.sync_locks.docs[0]["owner"] == token
    assert db.sync_locks.docs[0]["holder"] == "alice"


@pytest.mark.asyncio
async def test_refresh_keeps_owned_lock_fresh():
    db = FakeDB()
    locks = SyncLockService(database=db)
    token = await locks.acquire("odds", "fixture_external_id=900")
    db.sync_locks.docs[0]["acquired_at"] = utcnow() - timedelta(hours=1)

    assert await locks.refresh("odds", "fixture_external_id=900", token) is True
    assert utcnow() - db.sync_locks.docs[0]["acquired_at"] < timedelta(minutes=1)
    assert await locks.refresh("odds", "fixture_external_id=900", "someone-else") is False


@pytest.mark.asyncio
async def test_refreshed_lock_is_not_taken_over(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(lock_module.settings, "SYNC_LOCK_STALE_MINUTES", 30)
    first = SyncLockService(database=db)
    token = await first.acquire("odds", "all", holder="alice")
    db.sync_locks.docs[0]["acquired_at"] = utcnow() - timedelta(minutes=45)
    await first.refresh("odds", "all", token)

    with pytest.raises(SyncAlreadyRunningError):
        await SyncLockService(database=db).acquire("odds", "all", holder="bob")

    assert db.sync_locks.docs[0]["owner"] == token


@pytest.mark.asyncio
async def test_in_process_lock_fails_fast_without_the_database_row():
    db = FakeDB()
    locks = SyncLockService(database=db)
    await locks.acquire("countries", "all", holder="alice")
    db.sync_locks.docs.clear()

    with pytest.raises(SyncAlreadyRunningError) as exc_info:
        await locks.acquire("countries", "all", holder="bob")

    assert exc_info.value.lock_key == "sync:countries:all"
    assert db.sync_locks.docs == []


@pytest.mark.asyncio
async def test_concurrent_acquires_in_one_process_admit_one_holder():
    locks = SyncLockService(database=FakeDB())

    results = await asyncio.gather(
        locks.acquire("teams", "all", holder="alice"),
        locks.acquire("teams", "all", holder="bob"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, str) for result in results) == 1
    assert sum(isinstance(result, SyncAlreadyRunningError) for result in results) == 1


@pytest.mark.asyncio
async def test_failed_database_acquire_frees_the_in_process_lock():
    db = FakeDB()
    db.sync_locks.docs.append(
        {"_id": lock_key("countries", "all"), "owner": "other", "holder": "bob", "acquired_at": utcnow()}
    )
    locks = SyncLockService(database=db)

    with pytest.raises(SyncAlreadyRunningError):
        await locks.acquire("countries", "all")
    db.sync_locks.docs.clear()

    assert await locks.acquire("countries", "all")
