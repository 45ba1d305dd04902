import asyncio

import pytest
from sqlalchemy import update

from common.lock import DistributedLock
from common.models import LockRecord, utcnow


@pytest.mark.asyncio
async def test_only_one_concurrent_acquire_succeeds(db):
    locks = [DistributedLock(db, "job", f"holder-{i}") for i in range(5)]
    results = await asyncio.gather(*(lock.acquire() for lock in locks))
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_only_the_holder_can_release(db):
    mine = DistributedLock(db, "job", "me")
    theirs = DistributedLock(db, "job", "them")
    assert await mine.acquire()

    assert await theirs.release() is False
    assert await theirs.acquire() is False

    assert await mine.release() is True
    assert await theirs.acquire() is True


@pytest.mark.asyncio
async def test_expired_lock_is_taken_over(db):
    crashed = DistributedLock(db, "job", "crashed")
    assert await crashed.acquire()
    async with db.session() as session:
        await session.execute(update(LockRecord).values(expires_at=utcnow().replace(year=2000)))

    successor = DistributedLock(db, "job", "successor")
    assert await successor.acquire()
    # the crashed holder's late release must not free the successor's lock
    assert await crashed.release() is False
    assert await DistributedLock(db, "job", "third").acquire() is False


@pytest.mark.asyncio
async def test_different_names_do_not_conflict(db):
    assert await DistributedLock(db, "a", "x").acquire()
    assert await DistributedLock(db, "b", "y").acquire()


@pytest.mark.asyncio
async def test_extend_pushes_expiry_for_the_holder_only(db):
    mine = DistributedLock(db, "job", "me", ttl_seconds=60)
    assert await mine.acquire()
    async with db.session() as session:
        await session.execute(update(LockRecord).values(expires_at=utcnow().replace(year=2000)))

    assert await DistributedLock(db, "job", "them").extend() is False
    assert await mine.extend() is True
    async with db.session() as session:
        row = await session.get(LockRecord, "job")
    assert row.holder == "me"
    assert row.expires_at.year > 2000
    # renewed lease keeps others out again
    assert await DistributedLock(db, "job", "them").acquire() is False


@pytest.mark.asyncio
async def test_extend_fails_after_takeover(db):
    crashed = DistributedLock(db, "job", "crashed")
    assert await crashed.acquire()
    async with db.session() as session:
        await session.execute(update(LockRecord).values(expires_at=utcnow().replace(year=2000)))
    assert await DistributedLock(db, "job", "successor").acquire()

    assert await crashed.extend() is False
