"""
Crash-safe distributed lock on top of the shared database.

acquire(): one atomic statement
    INSERT INTO locks (name, holder, expires_at) VALUES (...)
    ON CONFLICT (name) DO UPDATE SET holder=..., expires_at=...
    WHERE locks.expires_at < now
A row is written only if the lock is free or the previous holder's TTL ran
out, so a crashed holder self-heals once its expiry passes.

extend(): UPDATE ... SET expires_at=now+ttl WHERE name=... AND holder=...
Long-running holders renew the lease; False means it was lost to a successor.

release(): DELETE ... WHERE name=... AND holder=... so we never release a lock
that expired and was re-acquired by someone else.
"""

import logging
from datetime import timedelta

from sqlalchemy import delete, update

from common.database import DatabaseManager, dialect_insert
from common.models import LockRecord, utcnow

logger = logging.getLogger("lock")


class DistributedLock:
    def __init__(self, db: DatabaseManager, name: str, holder: str, ttl_seconds: int = 300):
        self.db = db
        self.name = name
        self.holder = holder
        self.ttl_seconds = ttl_seconds

    async def acquire(self) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        async with self.db.session() as session:
            stmt = dialect_insert(session, LockRecord).values(
                name=self.name, holder=self.holder, expires_at=expires_at
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[LockRecord.name],
                set_={"holder": self.holder, "expires_at": expires_at},
                where=LockRecord.expires_at < now,
            )
            result = await session.execute(stmt)
            acquired = (result.rowcount or 0) > 0

        if acquired:
            logger.info("Lock acquired name=%s holder=%s ttl=%ss", self.name, self.holder, self.ttl_seconds)
        else:
            logger.info("Lock busy name=%s (requested by %s)", self.name, self.holder)
        return acquired

    async def release(self) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(LockRecord).where(LockRecord.name == self.name, LockRecord.holder == self.holder)
            )
            released = (result.rowcount or 0) > 0

        if not released:
            logger.warning("Lock name=%s no longer held by %s (expired?)", self.name, self.holder)
        return released

    async def extend(self) -> bool:
        expires_at = utcnow() + timedelta(seconds=self.ttl_seconds)
        async with self.db.session() as session:
            result = await session.execute(
                update(LockRecord)
                .where(LockRecord.name == self.name, LockRecord.holder == self.holder)
                .values(expires_at=expires_at)
            )
            extended = (result.rowcount or 0) > 0

        if not extended:
            logger.warning("Lock name=%s lost by %s, cannot extend", self.name, self.holder)
        return extended
