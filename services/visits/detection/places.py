"""
Read adapter over the host application's trips / regions / places tables.

Spatial lookups use PostGIS:
  ST_MakePoint  — construct a point from longitude, latitude
  ST_SetSRID    — assign SRID 4326
  ST_DWithin    — index-backed distance filter on geography (meters)

The expression GiST index created by db.schema keeps find_within() at
index-lookup cost even for users with hundreds of thousands of places.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from services.visits.detection.models import Place

logger = logging.getLogger(__name__)

_PLACE_COLUMNS = """
    p.id          AS place_id,
    t.id          AS trip_id,
    t.name        AS trip_name,
    r.name        AS region_name,
    p.name        AS place_name,
    p.latitude,
    p.longitude,
    p.icon_name,
    p.marker_color,
    p.notes
"""

_FIND_WITHIN_SQL = f"""
SELECT {_PLACE_COLUMNS}
FROM places p
JOIN regions r ON p.region_id = r.id
JOIN trips t ON r.trip_id = t.id
WHERE t.user_id = $1
  AND p.latitude IS NOT NULL
  AND p.longitude IS NOT NULL
  AND ST_DWithin(
        ST_SetSRID(ST_MakePoint(p.longitude, p.latitude), 4326)::geography,
        ST_SetSRID(ST_MakePoint($3, $2), 4326)::geography,
        $4
      )
"""

_SELECT_TRIP_SQL = """
SELECT id, name FROM trips WHERE id = $1 AND user_id = $2
"""

_SELECT_TRIP_PLACES_SQL = f"""
SELECT {_PLACE_COLUMNS}
FROM places p
JOIN regions r ON p.region_id = r.id
JOIN trips t ON r.trip_id = t.id
WHERE t.id = $1 AND t.user_id = $2
ORDER BY r.name, p.name
"""

_SELECT_PLACE_SQL = f"""
SELECT {_PLACE_COLUMNS}
FROM places p
JOIN regions r ON p.region_id = r.id
JOIN trips t ON r.trip_id = t.id
WHERE p.id = $1 AND t.user_id = $2
"""


@dataclass
class TripPlaces:
    """A trip with every place in it, coordinates or not."""

    trip_id: str
    trip_name: str
    places: list[Place] = field(default_factory=list)

    @property
    def places_with_location(self) -> list[Place]:
        return [p for p in self.places if p.has_location]

    @property
    def place_ids(self) -> set[str]:
        return {p.place_id for p in self.places}


class PlaceDirectory:
    """
    Place/Trip read model backed by PostgreSQL.

    Injected dependencies for testability:
      pool — asyncpg pool
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def find_within(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        radius_m: float,
    ) -> list[Place]:
        """Places of the user's trips within radius_m (coarse, unordered)."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_FIND_WITHIN_SQL, user_id, latitude, longitude, radius_m)
        return [Place.from_row(row) for row in rows]

    async def get_trip(self, user_id: str, trip_id: str) -> TripPlaces | None:
        async with self._pool.acquire() as conn:
            trip = await conn.fetchrow(_SELECT_TRIP_SQL, trip_id, user_id)
            if trip is None:
                return None
            rows = await conn.fetch(_SELECT_TRIP_PLACES_SQL, trip_id, user_id)
        return TripPlaces(
            trip_id=str(trip["id"]),
            trip_name=trip["name"] or "",
            places=[Place.from_row(row) for row in rows],
        )

    async def get_place(self, user_id: str, place_id: str) -> Place | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_PLACE_SQL, place_id, user_id)
        return Place.from_row(row) if row else None
