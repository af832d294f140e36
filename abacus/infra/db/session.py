"""Engine and session factory for the ingestion store.

PostgreSQL via asyncpg in production; SQLite URLs (aiosqlite) get a
plain engine without pool sizing, which it does not accept.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from abacus.config import Settings, settings


def _engine_options(cfg: Settings) -> dict[str, Any]:
    if make_url(cfg.database_url).get_backend_name() == "sqlite":
        return {}

    # statement caches off: pgbouncer in transaction mode rejects prepared statements
    connect_args: dict[str, object] = {
        "prepared_statement_cache_size": 0,
        "statement_cache_size": 0,
    }
    if cfg.database_require_ssl:
        connect_args["ssl"] = "require"
    return {
        "pool_size": cfg.db_pool_size,
        "max_overflow": cfg.db_max_overflow,
        "pool_pre_ping": True,
        "pool_timeout": cfg.db_pool_timeout,
        "pool_recycle": 300,
        "connect_args": connect_args,
    }


engine = create_async_engine(settings.database_url, echo=False, **_engine_options(settings))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One session per job run; uncommitted work is rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    # creates missing tables only; column changes need a migration
    from .models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
