"""
Candidate / visit persistence on PostgreSQL.

Concurrency model:
  - Ingest: every (user, place) transition runs inside pair_transaction(),
    one DB transaction holding pg_advisory_xact_lock on a hash of
    "user_id:place_id". Different pairs never contend; the same pair is
    serialized across processes and instances. The lock is released by
    COMMIT/ROLLBACK, never explicitly.
  - The partial unique index ux_place_visit_events_open_user_place backs the
    "one open visit per (user, place)" invariant even for writers that skip
    the lock (manual visits); inserts use ON CONFLICT DO NOTHING and report
    whether they won.
  - Sweep: reads stale rows without locks, then closes/deletes each with a
    guarded UPDATE/DELETE that re-checks the timestamp it read. A visit
    refreshed by ingest in between no longer matches and is left alone.
  - Backfill apply: trip_transaction() takes an advisory lock on
    "backfill:user_id:trip_id" so concurrent applies for one trip serialize.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable

from services.visits.detection.models import (
    PlaceVisitEvent,
    VisitCandidate,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_ADVISORY_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))"

_VISIT_COLUMNS = """
    id, user_id, place_id, arrived_at_utc, last_seen_at_utc, ended_at_utc, source,
    trip_id_snapshot, trip_name_snapshot, region_name_snapshot, place_name_snapshot,
    place_latitude_snapshot, place_longitude_snapshot, icon_name_snapshot,
    marker_color_snapshot, notes_html
"""

_SELECT_OPEN_VISIT_SQL = f"""
SELECT {_VISIT_COLUMNS}
FROM place_visit_events
WHERE user_id = $1 AND place_id = $2 AND ended_at_utc IS NULL
LIMIT 1
"""

_TOUCH_VISIT_SQL = """
UPDATE place_visit_events
SET last_seen_at_utc = GREATEST(last_seen_at_utc, $2)
WHERE id = $1 AND ended_at_utc IS NULL
RETURNING id
"""

_INSERT_VISIT_SQL = f"""
INSERT INTO place_visit_events ({_VISIT_COLUMNS})
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
"""

_INSERT_OPEN_VISIT_SQL = _INSERT_VISIT_SQL + """
ON CONFLICT (user_id, place_id) WHERE ended_at_utc IS NULL DO NOTHING
RETURNING id
"""

_SELECT_CANDIDATE_SQL = """
SELECT user_id, place_id, first_hit_utc, last_hit_utc, consecutive_hits
FROM place_visit_candidates
WHERE user_id = $1 AND place_id = $2
"""

_UPSERT_CANDIDATE_SQL = """
INSERT INTO place_visit_candidates (id, user_id, place_id, first_hit_utc, last_hit_utc, consecutive_hits)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (user_id, place_id) DO UPDATE
SET first_hit_utc = EXCLUDED.first_hit_utc,
    last_hit_utc = EXCLUDED.last_hit_utc,
    consecutive_hits = EXCLUDED.consecutive_hits
"""

_DELETE_CANDIDATE_SQL = """
DELETE FROM place_visit_candidates WHERE user_id = $1 AND place_id = $2
"""

_SELECT_STALE_VISITS_SQL = f"""
SELECT {_VISIT_COLUMNS}
FROM place_visit_events
WHERE ended_at_utc IS NULL AND last_seen_at_utc < $1
ORDER BY last_seen_at_utc
LIMIT $2
"""

_CLOSE_VISIT_IF_UNCHANGED_SQL = """
UPDATE place_visit_events
SET ended_at_utc = last_seen_at_utc
WHERE id = $1 AND ended_at_utc IS NULL AND last_seen_at_utc = $2
RETURNING id
"""

_SELECT_STALE_CANDIDATES_SQL = """
SELECT user_id, place_id, first_hit_utc, last_hit_utc, consecutive_hits
FROM place_visit_candidates
WHERE last_hit_utc < $1
ORDER BY last_hit_utc
LIMIT $2
"""

_DELETE_CANDIDATE_IF_UNCHANGED_SQL = """
DELETE FROM place_visit_candidates
WHERE user_id = $1 AND place_id = $2 AND last_hit_utc = $3
RETURNING id
"""

_END_VISIT_SQL = f"""
UPDATE place_visit_events
SET ended_at_utc = COALESCE(ended_at_utc, last_seen_at_utc)
WHERE id = $1 AND user_id = $2
RETURNING {_VISIT_COLUMNS}
"""

_SELECT_RECENT_VISITS_SQL = f"""
SELECT {_VISIT_COLUMNS}
FROM place_visit_events
WHERE user_id = $1 AND arrived_at_utc >= $2
ORDER BY arrived_at_utc DESC
LIMIT $3
"""

_SELECT_TRIP_VISITS_SQL = f"""
SELECT {_VISIT_COLUMNS}
FROM place_visit_events
WHERE user_id = $1
  AND (place_id = ANY($2::text[]) OR trip_id_snapshot = $3)
ORDER BY arrived_at_utc DESC
"""

_DELETE_TRIP_VISITS_SQL = """
DELETE FROM place_visit_events
WHERE user_id = $1
  AND id = ANY($2::text[])
  AND (place_id = ANY($3::text[]) OR trip_id_snapshot = $4)
RETURNING id
"""

_CLEAR_TRIP_VISITS_SQL = """
DELETE FROM place_visit_events
WHERE user_id = $1 AND trip_id_snapshot = $2
RETURNING id
"""

_COUNT_TRIP_VISITS_SQL = """
SELECT COUNT(*) FROM place_visit_events WHERE user_id = $1 AND trip_id_snapshot = $2
"""


def new_visit_id() -> str:
    return str(uuid.uuid4())


def _visit_params(visit: PlaceVisitEvent) -> tuple:
    snap = visit.snapshot
    return (
        visit.id,
        visit.user_id,
        visit.place_id,
        visit.arrived_at_utc,
        visit.last_seen_at_utc,
        visit.ended_at_utc,
        visit.source.value,
        snap.trip_id,
        snap.trip_name,
        snap.region_name,
        snap.place_name,
        snap.latitude,
        snap.longitude,
        snap.icon_name,
        snap.marker_color,
        snap.notes_html,
    )


# ---------------------------------------------------------------------------
# Units of work
# ---------------------------------------------------------------------------


class PairTransaction:
    """Candidate/visit operations for one (user, place), bound to a locked transaction."""

    def __init__(self, conn: Any, user_id: str, place_id: str) -> None:
        self._conn = conn
        self.user_id = user_id
        self.place_id = place_id

    async def get_open_visit(self) -> PlaceVisitEvent | None:
        row = await self._conn.fetchrow(_SELECT_OPEN_VISIT_SQL, self.user_id, self.place_id)
        return PlaceVisitEvent.from_row(row) if row else None

    async def touch_visit(self, visit_id: str, seen_at: datetime) -> bool:
        """False when the visit was closed after get_open_visit() read it."""
        row = await self._conn.fetchrow(_TOUCH_VISIT_SQL, visit_id, seen_at)
        return row is not None

    async def get_candidate(self) -> VisitCandidate | None:
        row = await self._conn.fetchrow(_SELECT_CANDIDATE_SQL, self.user_id, self.place_id)
        return VisitCandidate.from_row(row) if row else None

    async def save_candidate(self, candidate: VisitCandidate) -> None:
        await self._conn.execute(
            _UPSERT_CANDIDATE_SQL,
            str(uuid.uuid4()),
            candidate.user_id,
            candidate.place_id,
            candidate.first_hit_utc,
            candidate.last_hit_utc,
            candidate.consecutive_hits,
        )

    async def delete_candidate(self) -> None:
        await self._conn.execute(_DELETE_CANDIDATE_SQL, self.user_id, self.place_id)

    async def insert_open_visit(self, visit: PlaceVisitEvent) -> bool:
        """False when another writer already holds the open visit for this pair."""
        row = await self._conn.fetchrow(_INSERT_OPEN_VISIT_SQL, *_visit_params(visit))
        return row is not None


class TripTransaction:
    """Backfill apply operations for one (user, trip), bound to a locked transaction."""

    def __init__(self, conn: Any, user_id: str, trip_id: str) -> None:
        self._conn = conn
        self.user_id = user_id
        self.trip_id = trip_id

    async def list_visits(self, place_ids: Iterable[str]) -> list[PlaceVisitEvent]:
        rows = await self._conn.fetch(
            _SELECT_TRIP_VISITS_SQL, self.user_id, list(place_ids), self.trip_id
        )
        return [PlaceVisitEvent.from_row(row) for row in rows]

    async def insert_visit(self, visit: PlaceVisitEvent) -> None:
        await self._conn.execute(_INSERT_VISIT_SQL, *_visit_params(visit))

    async def delete_visits(self, visit_ids: Iterable[str], place_ids: Iterable[str]) -> int:
        ids = list(visit_ids)
        if not ids:
            return 0
        rows = await self._conn.fetch(
            _DELETE_TRIP_VISITS_SQL, self.user_id, ids, list(place_ids), self.trip_id
        )
        return len(rows)

    async def clear_visits(self) -> int:
        rows = await self._conn.fetch(_CLEAR_TRIP_VISITS_SQL, self.user_id, self.trip_id)
        return len(rows)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PostgresVisitStore:
    """
    Injected dependencies for testability:
      pool — asyncpg pool
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @asynccontextmanager
    async def pair_transaction(self, user_id: str, place_id: str) -> AsyncIterator[PairTransaction]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(_ADVISORY_LOCK_SQL, f"{user_id}:{place_id}")
                yield PairTransaction(conn, user_id, place_id)

    @asynccontextmanager
    async def trip_transaction(self, user_id: str, trip_id: str) -> AsyncIterator[TripTransaction]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(_ADVISORY_LOCK_SQL, f"backfill:{user_id}:{trip_id}")
                yield TripTransaction(conn, user_id, trip_id)

    # -- sweep ------------------------------------------------------------

    async def list_stale_open_visits(self, cutoff: datetime, limit: int = 1000) -> list[PlaceVisitEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_STALE_VISITS_SQL, cutoff, limit)
        return [PlaceVisitEvent.from_row(row) for row in rows]

    async def close_visit_if_unchanged(self, visit_id: str, last_seen_at_utc: datetime) -> bool:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_CLOSE_VISIT_IF_UNCHANGED_SQL, visit_id, last_seen_at_utc)
        return row is not None

    async def list_stale_candidates(self, cutoff: datetime, limit: int = 1000) -> list[VisitCandidate]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_STALE_CANDIDATES_SQL, cutoff, limit)
        return [VisitCandidate.from_row(row) for row in rows]

    async def delete_candidate_if_unchanged(
        self, user_id: str, place_id: str, last_hit_utc: datetime
    ) -> bool:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_DELETE_CANDIDATE_IF_UNCHANGED_SQL, user_id, place_id, last_hit_utc)
        return row is not None

    # -- explicit lifecycle -----------------------------------------------

    async def end_visit(self, user_id: str, visit_id: str) -> PlaceVisitEvent | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_END_VISIT_SQL, visit_id, user_id)
        return PlaceVisitEvent.from_row(row) if row else None

    async def insert_manual_visit(self, visit: PlaceVisitEvent) -> bool:
        async with self._pool.acquire() as conn:
            if visit.is_open:
                row = await conn.fetchrow(_INSERT_OPEN_VISIT_SQL, *_visit_params(visit))
                return row is not None
            await conn.execute(_INSERT_VISIT_SQL, *_visit_params(visit))
            return True

    async def recent_visits(self, user_id: str, since: datetime, limit: int = 50) -> list[PlaceVisitEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_RECENT_VISITS_SQL, user_id, since, limit)
        return [PlaceVisitEvent.from_row(row) for row in rows]

    # -- backfill reads ---------------------------------------------------

    async def list_trip_visits(
        self, user_id: str, trip_id: str, place_ids: Iterable[str]
    ) -> list[PlaceVisitEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_TRIP_VISITS_SQL, user_id, list(place_ids), trip_id)
        return [PlaceVisitEvent.from_row(row) for row in rows]

    async def count_trip_visits(self, user_id: str, trip_id: str) -> int:
        async with self._pool.acquire() as conn:
            count = await conn.fetchval(_COUNT_TRIP_VISITS_SQL, user_id, trip_id)
        return int(count or 0)
