"""
Schema bootstrap for the owned visit tables.

Usage:
    python -m services.visits.db.schema

Creates place_visit_candidates, place_visit_events and visit_settings (plus
their indexes) if missing, and the expression GiST indexes the spatial
queries depend on. Host-owned tables are never created here.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from services.visits.db.engine import create_engine
from services.visits.db.models import OWNED_TABLES, Base

logger = logging.getLogger(__name__)

# ST_DWithin on geography(ST_MakePoint(lon, lat)) needs matching expression
# indexes on the host tables, otherwise every ping is a sequential scan.
SPATIAL_INDEX_DDL = [
    """
    CREATE INDEX IF NOT EXISTS ix_places_location_gist
    ON places USING GIST ((ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography))
    WHERE latitude IS NOT NULL AND longitude IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_locations_location_gist
    ON locations USING GIST ((ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography))
    """,
]


async def create_schema(engine: AsyncEngine, *, include_spatial_indexes: bool = True) -> None:
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
        await conn.run_sync(Base.metadata.create_all, tables=OWNED_TABLES)
        if include_spatial_indexes:
            for ddl in SPATIAL_INDEX_DDL:
                await conn.execute(text(ddl))
    logger.info(
        "schema: ensured tables=%s spatial_indexes=%s",
        ",".join(t.name for t in OWNED_TABLES),
        include_spatial_indexes,
    )


async def main() -> None:
    from services.visits.observability import configure_logging

    configure_logging()
    engine = create_engine()
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
