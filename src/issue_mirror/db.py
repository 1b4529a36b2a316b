"""Async database engine and session helpers.

One engine per process, created from MirrorConfig.database_url. Collaborators
receive an async_sessionmaker and open short-lived sessions per unit of work.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import MirrorConfig
from .models import Base

logger = logging.getLogger("issue_mirror.db")

__all__ = [
    "create_engine",
    "create_session_factory",
    "init_db",
    "insert_for",
    "session_scope",
]


def create_engine(config: MirrorConfig) -> AsyncEngine:
    """Create the async engine for the configured database.

    In-memory SQLite URLs share a single connection so every session sees
    the same database.
    """
    url = config.database_url
    kwargs: dict = {"echo": config.database_echo}
    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    elif not url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", extra={"dialect": engine.dialect.name})


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session whose transaction commits on success and rolls back on error."""
    async with session_factory() as session:
        async with session.begin():
            yield session


def insert_for(session: AsyncSession, table):
    """Return a dialect insert() supporting on_conflict_do_update.

    Upserts are expressed with INSERT ... ON CONFLICT, which both PostgreSQL
    and SQLite (>= 3.24) support through their dialect-specific insert().
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")
