"""
Connection factories.

asyncpg pool for every runtime query (ingest, sweep, backfill). The
SQLAlchemy AsyncEngine is only used by schema bootstrap, so it runs with
NullPool and is disposed right after.
"""

from contextlib import asynccontextmanager

import asyncpg
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from services.visits.config import settings


async def create_pool() -> asyncpg.Pool:
    return await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout_s,
    )


def create_engine() -> AsyncEngine:
    url = settings.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return create_async_engine(
        url,
        poolclass=NullPool,
        echo=settings.debug and settings.environment == "development",
    )


@asynccontextmanager
async def standalone_pool():
    """
    For standalone scripts (cleanup job, bootstrap) that run outside any host
    process. Closes the pool on exit to avoid leaking connections.
    """
    pool = await create_pool()
    try:
        yield pool
    finally:
        await pool.close()
