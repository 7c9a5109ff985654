"""
Database module.

asyncpg pool for runtime SQL, SQLAlchemy models + bootstrap for the schema.
"""

from services.visits.db.engine import create_engine, create_pool, standalone_pool
from services.visits.db.models import (
    Base,
    Location,
    Place,
    PlaceVisitCandidate,
    PlaceVisitEvent,
    Region,
    Trip,
    VisitSettingsRow,
)
from services.visits.db.schema import create_schema

__all__ = [
    "create_engine",
    "create_pool",
    "standalone_pool",
    "create_schema",
    "Base",
    "Location",
    "Place",
    "PlaceVisitCandidate",
    "PlaceVisitEvent",
    "Region",
    "Trip",
    "VisitSettingsRow",
]
