"""
Batched historical ping query for backfill analysis.

One query per place chunk. The chunk's places are inlined as a VALUES list
(3 bind params per place) and each place pulls its nearby pings through a
CROSS JOIN LATERAL that the locations GiST index can serve:

    place_coords(place_id, lon, lat)
      x LATERAL (pings of the user within the outermost tier radius)
    GROUP BY place, UTC date

Per group the query returns first/last sighting, min distance, total and
check-in counts, and for every tier k a cumulative hit count and mean
distance (COUNT/AVG ... FILTER (WHERE distance <= radius_k)).

Pings whose accuracy is worse than accuracy_reject_m are excluded, the same
filter the realtime matcher applies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping, Sequence

from services.visits.backfill.scoring import Tier
from services.visits.detection.models import Place, ensure_utc

logger = logging.getLogger(__name__)

# $1 user_id, $2 outer radius, $3 from_date, $4 to_date, $5 accuracy_reject_m
_FIXED_PARAMS = 5

_PING_GEOGRAPHY = "ST_SetSRID(ST_MakePoint(l.longitude, l.latitude), 4326)::geography"
_PLACE_GEOGRAPHY = "ST_SetSRID(ST_MakePoint(pc.lon, pc.lat), 4326)::geography"

_COUNT_LOCATIONS_SQL = """
SELECT COUNT(*)
FROM locations l
WHERE l.user_id = $1
  AND ($2::date IS NULL OR (l.timestamp_utc AT TIME ZONE 'UTC')::date >= $2::date)
  AND ($3::date IS NULL OR (l.timestamp_utc AT TIME ZONE 'UTC')::date <= $3::date)
"""


@dataclass(frozen=True, slots=True)
class PingGroup:
    """Pings near one place on one UTC calendar day."""

    place_id: str
    visit_date: date
    first_seen_utc: datetime
    last_seen_utc: datetime
    min_distance_m: float
    hits_total: int
    checkin_count: int
    tier_hits: tuple[int, ...]
    tier_mean_distance_m: tuple[float | None, ...]

    @property
    def key(self) -> tuple[str, date]:
        return (self.place_id, self.visit_date)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], tier_count: int) -> "PingGroup":
        return cls(
            place_id=str(row["place_id"]),
            visit_date=row["visit_date"],
            first_seen_utc=ensure_utc(row["first_seen"]),
            last_seen_utc=ensure_utc(row["last_seen"]),
            min_distance_m=float(row["min_distance"]),
            hits_total=int(row["hits_total"]),
            checkin_count=int(row["checkin_count"]),
            tier_hits=tuple(int(row[f"hits_tier_{k}"] or 0) for k in range(1, tier_count + 1)),
            tier_mean_distance_m=tuple(
                float(row[f"mean_distance_tier_{k}"]) if row[f"mean_distance_tier_{k}"] is not None else None
                for k in range(1, tier_count + 1)
            ),
        )


def build_ping_groups_sql(tier_count: int, place_count: int) -> str:
    tier_columns = []
    for k in range(1, tier_count + 1):
        param = f"${_FIXED_PARAMS + k}"
        tier_columns.append(f"COUNT(*) FILTER (WHERE h.distance <= {param}) AS hits_tier_{k}")
        tier_columns.append(f"AVG(h.distance) FILTER (WHERE h.distance <= {param}) AS mean_distance_tier_{k}")

    first_place_param = _FIXED_PARAMS + tier_count + 1
    values_rows = []
    for i in range(place_count):
        p = first_place_param + 3 * i
        values_rows.append(f"(${p}::text, ${p + 1}::float8, ${p + 2}::float8)")

    newline = ",\n        "
    return f"""
WITH place_coords AS (
    SELECT * FROM (VALUES
        {newline.join(values_rows)}
    ) AS t(place_id, lon, lat)
)
SELECT
    pc.place_id,
    (h.timestamp_utc AT TIME ZONE 'UTC')::date AS visit_date,
    MIN(h.timestamp_utc) AS first_seen,
    MAX(h.timestamp_utc) AS last_seen,
    MIN(h.distance) AS min_distance,
    COUNT(*) AS hits_total,
    COUNT(*) FILTER (WHERE h.is_user_invoked) AS checkin_count,
    {newline.join(tier_columns)}
FROM place_coords pc
CROSS JOIN LATERAL (
    SELECT
        l.timestamp_utc,
        l.is_user_invoked,
        ST_Distance({_PING_GEOGRAPHY}, {_PLACE_GEOGRAPHY}) AS distance
    FROM locations l
    WHERE l.user_id = $1
      AND ST_DWithin({_PING_GEOGRAPHY}, {_PLACE_GEOGRAPHY}, $2)
      AND ($3::date IS NULL OR (l.timestamp_utc AT TIME ZONE 'UTC')::date >= $3::date)
      AND ($4::date IS NULL OR (l.timestamp_utc AT TIME ZONE 'UTC')::date <= $4::date)
      AND ($5::float8 = 0 OR l.accuracy_m IS NULL OR l.accuracy_m <= $5::float8)
) h
GROUP BY pc.place_id, (h.timestamp_utc AT TIME ZONE 'UTC')::date
ORDER BY pc.place_id, visit_date
"""


async def fetch_ping_groups(
    conn: Any,
    *,
    user_id: str,
    places: Sequence[Place],
    tiers: Sequence[Tier],
    accuracy_reject_m: float,
    from_date: date | None,
    to_date: date | None,
    timeout: float | None = None,
) -> list[PingGroup]:
    """Run the grouped ping query for one chunk of located places."""
    if not places:
        return []

    sql = build_ping_groups_sql(len(tiers), len(places))
    args: list[Any] = [
        user_id,
        tiers[-1].radius_m,
        from_date,
        to_date,
        accuracy_reject_m,
        *(tier.radius_m for tier in tiers),
    ]
    for place in places:
        args.extend((place.place_id, place.longitude, place.latitude))

    rows = await conn.fetch(sql, *args, timeout=timeout)
    return [PingGroup.from_row(row, len(tiers)) for row in rows]


async def count_locations(
    conn: Any,
    user_id: str,
    from_date: date | None,
    to_date: date | None,
) -> int:
    count = await conn.fetchval(_COUNT_LOCATIONS_SQL, user_id, from_date, to_date)
    return int(count or 0)
