"""
Async database access shared by every service.

- DatabaseManager owns one async engine + session factory per process.
- init_database()/get_database_manager() expose it as a process-wide singleton.
- insert_ignore() is the conflict-tolerant "INSERT ... ON CONFLICT DO NOTHING"
  used for the dedup ledger, the delivery log and the idempotency gate.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional, Sequence, Type

from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from common.models import Base

logger = logging.getLogger("database")


class DatabaseUnavailable(RuntimeError):
    """Raised at startup when the database cannot be reached. Process-fatal."""


class DatabaseManager:
    """Async database manager with a single engine and session factory."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        """Initialize the async engine and sessionmaker if not already initialized."""
        if self._engine is not None:
            return

        logger.info("Initializing async database engine")
        self._engine = create_async_engine(self._database_url, echo=False)

        if self._database_url.startswith("sqlite+aiosqlite"):

            @event.listens_for(self._engine.sync_engine, "connect")
            def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # pragma: no cover
                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout=5000")
                finally:
                    cursor.close()

        self._sessionmaker = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    async def create_tables(self) -> None:
        """Create missing tables (idempotent)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        """Round-trip a trivial query; raises DatabaseUnavailable on failure."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise DatabaseUnavailable(f"database unreachable: {e}") from e

    async def dispose(self) -> None:
        """Dispose of the engine and clear the sessionmaker."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Async context manager yielding an AsyncSession.
        Commits on success, rolls back on errors.
        """
        if self._sessionmaker is None:
            raise RuntimeError("DatabaseManager is not initialized. Call init() first.")

        session: AsyncSession = self._sessionmaker()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager is not initialized. Call init() first.")
        return self._engine


_db_manager: Optional[DatabaseManager] = None


async def init_database(database_url: str, *, create_tables: bool = True) -> DatabaseManager:
    """
    Create, initialize and health-check the global DatabaseManager.
    An unreachable database is the one process-fatal condition: the
    DatabaseUnavailable raised here is meant to stop the process.
    """
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)
    await _db_manager.init()
    await _db_manager.ping()
    if create_tables:
        await _db_manager.create_tables()
    return _db_manager


async def dispose_database() -> None:
    """Dispose the global DatabaseManager singleton."""
    global _db_manager

    if _db_manager is not None:
        await _db_manager.dispose()
        _db_manager = None


def get_database_manager() -> DatabaseManager:
    """Return the initialized DatabaseManager instance."""
    if _db_manager is None:
        raise RuntimeError("DatabaseManager is not initialized.")
    return _db_manager


# -----------------------------------------------------------------------------
# Dialect-aware upsert helpers
# -----------------------------------------------------------------------------
def dialect_insert(session: AsyncSession, model: Type[Base]):
    """Return the dialect-specific insert() so ON CONFLICT clauses are available."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upserts are not supported on dialect {name!r}")


async def insert_ignore(
    session: AsyncSession,
    model: Type[Base],
    values: Dict[str, Any],
    conflict_cols: Sequence[str],
) -> bool:
    """
    INSERT ... ON CONFLICT (conflict_cols) DO NOTHING.
    Returns True when a row was written, False when it already existed.
    """
    stmt = dialect_insert(session, model).values(**values).on_conflict_do_nothing(
        index_elements=list(conflict_cols)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0
