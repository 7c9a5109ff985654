"""
BackfillAnalysisEngine — reconstruct visits for one trip from the ping archive.

analyze():
  1. Load the trip with all its places and every existing visit that belongs
     to it (place currently in the trip, or trip snapshot = this trip).
  2. Query pings per (place, UTC date) in chunks of backfill_chunk_size
     places. Each chunk is retried with exponential backoff; a chunk that
     keeps failing is reported in failed_chunks and the rest still complete.
  3. Classify each (place, date) group:
       - an existing visit already covers it        -> skipped
       - tier-1 hits >= required_hits               -> new visit
       - outer-tier / cross-tier evidence / check-in -> suggestion
  4. Flag existing visits as stale (place deleted, gone from the trip,
     moved, or no supporting pings in the scanned range).

apply():
  One transaction per trip under a per-(user, trip) advisory lock. Deletes
  run first, then creates are deduplicated against what remains by
  (place_id, UTC arrival date), or by (place name, date) for visits whose
  place was deleted. Existing visits always win, so re-applying the same
  selection creates nothing new.

Reads hold no locks; only apply() and clear_visits() write.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import date
from typing import Any, Iterable, Iterator, Sequence

from services.visits.backfill.models import (
    BackfillCandidate,
    BackfillCreateVisit,
    BackfillInfo,
    BackfillPreview,
    BackfillResult,
    BackfillSelection,
    ExistingVisit,
    FailedChunk,
    StaleVisit,
    SuggestedVisit,
)
from services.visits.backfill.queries import PingGroup, count_locations, fetch_ping_groups
from services.visits.backfill.scoring import (
    Tier,
    build_tiers,
    confidence_score,
    cross_tier_level,
    qualifying_tier,
    suggestion_reason,
)
from services.visits.config import settings as app_settings
from services.visits.detection.geo import haversine_m
from services.visits.detection.models import (
    Place,
    PlaceVisitEvent,
    VisitSnapshot,
    VisitSource,
    ensure_utc,
)
from services.visits.detection.store import new_visit_id
from services.visits.errors import BackfillCancelled, ChunkQueryError, TripNotFoundError
from services.visits.observability import report_exception
from services.visits.settings_provider import VisitSettings

logger = logging.getLogger(__name__)

REASON_PLACE_DELETED = "Place was deleted"
REASON_PLACE_GONE = "Place no longer exists"
REASON_PLACE_MOVED = "Place was moved"
REASON_NO_PINGS = "No supporting location pings"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _chunks(items: Sequence[Place], size: int) -> Iterator[list[Place]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _check_cancelled(cancel_event: asyncio.Event | None, trip_id: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise BackfillCancelled(f"Backfill analysis for trip {trip_id} cancelled")


def _in_range(day: date, from_date: date | None, to_date: date | None) -> bool:
    if from_date is not None and day < from_date:
        return False
    if to_date is not None and day > to_date:
        return False
    return True


class _VisitKeys:
    """Dedup keys of existing visits: (place_id, date), or (name, date) when the place is gone."""

    def __init__(self, visits: Iterable[PlaceVisitEvent]) -> None:
        self.by_place: set[tuple[str, date]] = set()
        self.by_name: set[tuple[str, date]] = set()
        for visit in visits:
            if visit.place_id is not None:
                self.by_place.add((visit.place_id, visit.visit_date))
            else:
                self.by_name.add((visit.snapshot.place_name, visit.visit_date))

    def covers(self, place: Place, day: date) -> bool:
        return (place.place_id, day) in self.by_place or (place.name, day) in self.by_name

    def add(self, place: Place, day: date) -> None:
        self.by_place.add((place.place_id, day))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class BackfillAnalysisEngine:
    """
    Injected dependencies for testability:
      pool              — asyncpg pool for the ping archive queries
      places            — PlaceDirectory (get_trip)
      store             — PostgresVisitStore (list_trip_visits, trip_transaction, count_trip_visits)
      settings_provider — anything with async get() -> VisitSettings
    """

    def __init__(
        self,
        pool: Any,
        places: Any,
        store: Any,
        settings_provider: Any,
        *,
        chunk_size: int | None = None,
        max_retries: int | None = None,
        retry_backoff_s: float | None = None,
        query_timeout_s: float | None = None,
    ) -> None:
        self._pool = pool
        self._places = places
        self._store = store
        self._settings_provider = settings_provider
        self._chunk_size = chunk_size or app_settings.backfill_chunk_size
        self._max_retries = max_retries or app_settings.backfill_chunk_retries
        self._retry_backoff_s = (
            app_settings.backfill_retry_backoff_s if retry_backoff_s is None else retry_backoff_s
        )
        self._query_timeout_s = query_timeout_s or app_settings.backfill_query_timeout_s

    async def _load_trip(self, user_id: str, trip_id: str):
        trip = await self._places.get_trip(user_id, trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id, user_id)
        return trip

    # ------------------------------------------------------------------
    # Analyze
    # ------------------------------------------------------------------

    async def analyze(
        self,
        user_id: str,
        trip_id: str,
        from_date: date | None = None,
        to_date: date | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BackfillPreview:
        start_ts = time.monotonic()
        trip = await self._load_trip(user_id, trip_id)
        visit_settings = await self._settings_provider.get()
        tiers = build_tiers(visit_settings)

        located = trip.places_with_location
        existing = await self._store.list_trip_visits(user_id, trip_id, trip.place_ids)
        logger.info(
            "backfill: analyze trip=%s user=%s places=%d located=%d existing=%d",
            trip_id,
            user_id,
            len(trip.places),
            len(located),
            len(existing),
        )

        groups: list[PingGroup] = []
        failed_chunks: list[FailedChunk] = []
        for index, chunk in enumerate(_chunks(located, self._chunk_size)):
            _check_cancelled(cancel_event, trip_id)
            try:
                groups.extend(
                    await self._query_chunk(index, chunk, user_id, tiers, visit_settings, from_date, to_date)
                )
            except ChunkQueryError as exc:
                report_exception(exc)
                failed_chunks.append(
                    FailedChunk(chunk_index=index, place_ids=exc.place_ids, error=str(exc.cause))
                )
        _check_cancelled(cancel_event, trip_id)

        places_by_id = {p.place_id: p for p in trip.places}
        failed_ids = {pid for chunk in failed_chunks for pid in chunk.place_ids}
        scanned_ids = {p.place_id for p in located} - failed_ids
        keys = _VisitKeys(existing)

        new_visits: list[BackfillCandidate] = []
        suggestions: list[SuggestedVisit] = []
        for group in groups:
            place = places_by_id.get(group.place_id)
            if place is None or keys.covers(place, group.visit_date):
                continue
            if group.tier_hits[0] >= visit_settings.required_hits:
                new_visits.append(self._candidate(group, place, visit_settings))
                continue
            suggestion = self._suggestion(group, place, tiers, visit_settings)
            if suggestion is not None:
                suggestions.append(suggestion)

        supported = {group.key for group in groups}
        stale = self._stale_visits(
            existing, places_by_id, supported, scanned_ids, visit_settings, from_date, to_date
        )
        stale_ids = {s.visit_id for s in stale}
        existing_dtos = [
            ExistingVisit(
                visit_id=v.id,
                place_id=v.place_id,
                place_name=v.snapshot.place_name,
                region_name=v.snapshot.region_name,
                visit_date=v.visit_date,
                arrived_at_utc=v.arrived_at_utc,
                source=v.source.value,
                is_open=v.is_open,
            )
            for v in sorted(existing, key=lambda v: v.arrived_at_utc, reverse=True)
            if v.id not in stale_ids
        ]

        new_visits.sort(key=lambda c: c.place_name)
        new_visits.sort(key=lambda c: c.visit_date, reverse=True)
        suggestions.sort(key=lambda s: s.place_name)
        suggestions.sort(key=lambda s: s.visit_date, reverse=True)

        duration_ms = int((time.monotonic() - start_ts) * 1000)
        logger.info(
            "backfill: preview trip=%s new=%d suggested=%d stale=%d existing=%d failed_chunks=%d duration_ms=%d",
            trip_id,
            len(new_visits),
            len(suggestions),
            len(stale),
            len(existing_dtos),
            len(failed_chunks),
            duration_ms,
        )
        return BackfillPreview(
            trip_id=trip_id,
            trip_name=trip.trip_name,
            locations_scanned=sum(g.hits_total for g in groups),
            places_analyzed=len(located),
            analysis_duration_ms=duration_ms,
            new_visits=new_visits,
            suggested_visits=suggestions,
            stale_visits=stale,
            existing_visits=existing_dtos,
            failed_chunks=failed_chunks,
        )

    async def _query_chunk(
        self,
        index: int,
        chunk: list[Place],
        user_id: str,
        tiers: Sequence[Tier],
        visit_settings: VisitSettings,
        from_date: date | None,
        to_date: date | None,
    ) -> list[PingGroup]:
        """Run one chunk with retries. Raises ChunkQueryError once retries are exhausted."""
        for attempt in range(self._max_retries):
            try:
                async with self._pool.acquire() as conn:
                    return await fetch_ping_groups(
                        conn,
                        user_id=user_id,
                        places=chunk,
                        tiers=tiers,
                        accuracy_reject_m=visit_settings.accuracy_reject_m,
                        from_date=from_date,
                        to_date=to_date,
                        timeout=self._query_timeout_s,
                    )
            except Exception as exc:
                if attempt < self._max_retries - 1:
                    wait = self._retry_backoff_s * (2 ** attempt)
                    logger.warning(
                        "backfill: chunk %d (%d places) failed, retry %d/%d in %.1fs: %s",
                        index, len(chunk), attempt + 1, self._max_retries, wait, exc,
                    )
                    await asyncio.sleep(wait)
                    continue

                logger.error(
                    "backfill: chunk %d (%d places) failed after %d attempts: %s",
                    index, len(chunk), self._max_retries, exc,
                )
                raise ChunkQueryError(index, [p.place_id for p in chunk], exc) from exc
        return []

    def _candidate(self, group: PingGroup, place: Place, visit_settings: VisitSettings) -> BackfillCandidate:
        mean = group.tier_mean_distance_m[0]
        return BackfillCandidate(
            place_id=place.place_id,
            place_name=place.name,
            region_name=place.region_name,
            visit_date=group.visit_date,
            first_seen_utc=group.first_seen_utc,
            last_seen_utc=group.last_seen_utc,
            location_count=group.tier_hits[0],
            avg_distance_m=round(mean or 0.0, 1),
            confidence=confidence_score(group.tier_hits[0], mean, visit_settings),
            tier=1,
            latitude=place.latitude,
            longitude=place.longitude,
            icon_name=place.icon_name,
            marker_color=place.marker_color,
        )

    def _suggestion(
        self,
        group: PingGroup,
        place: Place,
        tiers: Sequence[Tier],
        visit_settings: VisitSettings,
    ) -> SuggestedVisit | None:
        has_checkin = group.checkin_count >= 1

        tier = qualifying_tier(group.tier_hits, tiers)
        level = tier.level if tier is not None else None
        if level is None:
            cross = cross_tier_level(group.tier_hits)
            if cross is not None:
                level = cross + 1
        if level is None and has_checkin:
            level = next(k for k, hits in enumerate(group.tier_hits, start=1) if hits >= 1)
        if level is None:
            return None

        evidence = tiers[level - 1]
        return SuggestedVisit(
            place_id=place.place_id,
            place_name=place.name,
            region_name=place.region_name,
            visit_date=group.visit_date,
            first_seen_utc=group.first_seen_utc,
            last_seen_utc=group.last_seen_utc,
            min_distance_m=round(group.min_distance_m, 1),
            tier_hits=list(group.tier_hits),
            hits_total=group.hits_total,
            has_user_checkin=has_checkin,
            suggestion_reason=suggestion_reason(group.tier_hits, tiers, group.hits_total, has_checkin),
            confidence=confidence_score(
                group.tier_hits[level - 1],
                group.tier_mean_distance_m[level - 1],
                visit_settings,
                weight=evidence.weight,
            ),
            tier=level,
            latitude=place.latitude,
            longitude=place.longitude,
            icon_name=place.icon_name,
            marker_color=place.marker_color,
        )

    def _stale_visits(
        self,
        visits: Sequence[PlaceVisitEvent],
        places_by_id: dict[str, Place],
        supported: set[tuple[str, date]],
        scanned_ids: set[str],
        visit_settings: VisitSettings,
        from_date: date | None,
        to_date: date | None,
    ) -> list[StaleVisit]:
        stale: list[StaleVisit] = []
        for visit in visits:
            reason: str | None = None
            distance: float | None = None

            if visit.place_id is None:
                reason = REASON_PLACE_DELETED
            elif visit.place_id not in places_by_id:
                reason = REASON_PLACE_GONE
            else:
                place = places_by_id[visit.place_id]
                snap = visit.snapshot
                if place.has_location and snap.latitude is not None and snap.longitude is not None:
                    moved = haversine_m(snap.latitude, snap.longitude, place.latitude, place.longitude)
                    if moved > visit_settings.max_search_radius_m:
                        reason = REASON_PLACE_MOVED
                        distance = round(moved, 1)

                if (
                    reason is None
                    and visit.source is not VisitSource.MANUAL
                    and visit.place_id in scanned_ids
                    and _in_range(visit.visit_date, from_date, to_date)
                    and (visit.place_id, visit.visit_date) not in supported
                ):
                    reason = REASON_NO_PINGS

            if reason is not None:
                stale.append(
                    StaleVisit(
                        visit_id=visit.id,
                        place_id=visit.place_id,
                        place_name=visit.snapshot.place_name,
                        region_name=visit.snapshot.region_name,
                        visit_date=visit.visit_date,
                        reason=reason,
                        distance_m=distance,
                    )
                )
        return stale

    # ------------------------------------------------------------------
    # Apply / clear
    # ------------------------------------------------------------------

    async def apply(self, user_id: str, trip_id: str, selection: BackfillSelection) -> BackfillResult:
        trip = await self._load_trip(user_id, trip_id)
        visit_settings = await self._settings_provider.get()
        places_by_id = {p.place_id: p for p in trip.places}

        created = confirmed = skipped = 0
        async with self._store.trip_transaction(user_id, trip_id) as tx:
            deleted = await tx.delete_visits(selection.delete_visit_ids, places_by_id.keys())
            keys = _VisitKeys(await tx.list_visits(places_by_id.keys()))

            for item in selection.create_visits:
                if await self._create(tx, user_id, item, places_by_id, keys, visit_settings, VisitSource.BACKFILL):
                    created += 1
                else:
                    skipped += 1

            for item in selection.confirmed_suggestions:
                if await self._create(
                    tx, user_id, item, places_by_id, keys, visit_settings, VisitSource.BACKFILL_USER_CONFIRMED
                ):
                    confirmed += 1
                else:
                    skipped += 1

        logger.info(
            "backfill: applied trip=%s user=%s created=%d confirmed=%d deleted=%d skipped=%d",
            trip_id, user_id, created, confirmed, deleted, skipped,
        )
        return BackfillResult(
            visits_created=created,
            suggestions_confirmed=confirmed,
            visits_deleted=deleted,
            skipped=skipped,
            message=(
                f"Created {created + confirmed} visits ({created} matched, {confirmed} confirmed), "
                f"deleted {deleted} stale visits."
            ),
        )

    async def _create(
        self,
        tx: Any,
        user_id: str,
        item: BackfillCreateVisit,
        places_by_id: dict[str, Place],
        keys: _VisitKeys,
        visit_settings: VisitSettings,
        source: VisitSource,
    ) -> bool:
        place = places_by_id.get(item.place_id)
        if place is None:
            return False

        first_seen = ensure_utc(item.first_seen_utc)
        last_seen = ensure_utc(item.last_seen_utc)
        day = first_seen.date()
        if keys.covers(place, day):
            return False

        await tx.insert_visit(
            PlaceVisitEvent(
                id=new_visit_id(),
                user_id=user_id,
                place_id=place.place_id,
                arrived_at_utc=first_seen,
                last_seen_at_utc=last_seen,
                ended_at_utc=last_seen,
                source=source,
                snapshot=VisitSnapshot.from_place(place, visit_settings.notes_snapshot_max_chars),
            )
        )
        keys.add(place, day)
        return True

    async def clear_visits(self, user_id: str, trip_id: str) -> BackfillResult:
        """Delete every visit snapshotted to this trip, whatever its source."""
        await self._load_trip(user_id, trip_id)
        async with self._store.trip_transaction(user_id, trip_id) as tx:
            count = await tx.clear_visits()
        logger.info("backfill: cleared %d visits trip=%s user=%s", count, trip_id, user_id)
        return BackfillResult(visits_deleted=count, message=f"Deleted {count} visits.")

    # ------------------------------------------------------------------
    # Info
    # ------------------------------------------------------------------

    async def get_info(
        self,
        user_id: str,
        trip_id: str,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> BackfillInfo:
        trip = await self._load_trip(user_id, trip_id)
        located = len(trip.places_with_location)
        async with self._pool.acquire() as conn:
            location_count = await count_locations(conn, user_id, from_date, to_date)
        existing = await self._store.count_trip_visits(user_id, trip_id)

        # ~50ms fixed + ~2ms per place + ~10ms per 1,000 pings
        estimated_ms = 50 + located * 2 + location_count / 100
        return BackfillInfo(
            trip_id=trip_id,
            trip_name=trip.trip_name,
            total_places=len(trip.places),
            places_with_coordinates=located,
            estimated_locations=location_count,
            estimated_seconds=max(1, math.ceil(estimated_ms / 1000)),
            existing_visits=existing,
        )
