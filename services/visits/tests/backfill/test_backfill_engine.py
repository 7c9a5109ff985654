"""
Tests for services/visits/backfill/engine.py

Uses FakePlaceDirectory / FakeVisitStore for trips and visits, and a mock
asyncpg pool whose fetch() returns grouped ping rows for the requested
places.

Covers:
- classification: new visit / suggestion / already covered
- stale reasons (deleted, gone, moved, no supporting pings)
- chunking, retry and partial results
- cancellation
- apply: idempotence, existing wins, deletes before creates
- clear_visits, get_info
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from services.visits.backfill.engine import (
    REASON_NO_PINGS,
    REASON_PLACE_DELETED,
    REASON_PLACE_GONE,
    REASON_PLACE_MOVED,
    BackfillAnalysisEngine,
)
from services.visits.backfill.models import BackfillCreateVisit, BackfillSelection
from services.visits.backfill.scoring import confidence_score
from services.visits.detection.models import VisitSnapshot, VisitSource
from services.visits.errors import BackfillCancelled, TripNotFoundError
from services.visits.tests.conftest import (
    PLACE_LAT,
    PLACE_LON,
    T0,
    TRIP_ID,
    USER_ID,
    make_conn,
    make_place,
    make_pool,
    make_visit,
    offset_north,
)
from services.visits.tests.helpers.fakes import FakePlaceDirectory, FakeVisitStore

DAY = T0.date()
Q_LAT, Q_LON = offset_north(PLACE_LAT, PLACE_LON, 1_000)


def _at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _group_row(
    place_id: str,
    tier_hits: tuple[int, int, int],
    day: date = DAY,
    mean: float = 20.0,
    checkins: int = 0,
) -> dict:
    row = {
        "place_id": place_id,
        "visit_date": day,
        "first_seen": _at(day, 9),
        "last_seen": _at(day, 10, 30),
        "min_distance": mean / 2,
        "hits_total": tier_hits[-1],
        "checkin_count": checkins,
    }
    for k, hits in enumerate(tier_hits, start=1):
        row[f"hits_tier_{k}"] = hits
        row[f"mean_distance_tier_{k}"] = mean * k if hits else None
    return row


class _PingArchive:
    """conn.fetch() stand-in: returns the rows of whichever places the chunk asked for."""

    def __init__(self, rows: list[dict], failing: set[str] | None = None) -> None:
        self.rows = rows
        self.failing = failing or set()
        self.calls: list[set[str]] = []

    async def fetch(self, sql, *args, timeout=None):
        requested = {a for a in args if isinstance(a, str)}
        self.calls.append(requested)
        if requested & self.failing:
            raise asyncio.TimeoutError()
        return [r for r in self.rows if r["place_id"] in requested]


@pytest.fixture
def places():
    return [
        make_place(),
        make_place(place_id="place-q", name="Elevador de Santa Justa", latitude=Q_LAT, longitude=Q_LON),
        make_place(place_id="place-r", name="Somewhere unmapped", latitude=None, longitude=None),
    ]


@pytest.fixture
def backfill_directory(places):
    return FakePlaceDirectory(places)


def _engine(archive, directory, store, settings_provider, conn=None, **overrides) -> BackfillAnalysisEngine:
    conn = conn or make_conn()
    fetch = archive.fetch if isinstance(archive, _PingArchive) else archive
    conn.fetch = AsyncMock(side_effect=fetch)
    options = {"chunk_size": 50, "max_retries": 3, "retry_backoff_s": 0, "query_timeout_s": 5}
    options.update(overrides)
    return BackfillAnalysisEngine(make_pool(conn), directory, store, settings_provider, **options)


# ---------------------------------------------------------------------------
# analyze()
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.asyncio
    async def test_new_visit_from_tier_one_hits(self, backfill_directory, store, settings_provider, visit_settings):
        engine = _engine(_PingArchive([_group_row("place-p", (3, 3, 3))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert preview.trip_name == "Lisbon long weekend"
        assert preview.places_analyzed == 2
        assert len(preview.new_visits) == 1
        candidate = preview.new_visits[0]
        assert candidate.place_id == "place-p"
        assert candidate.visit_date == DAY
        assert candidate.location_count == 3
        assert candidate.tier == 1
        assert candidate.confidence == confidence_score(3, 20.0, visit_settings)
        assert preview.suggested_visits == []
        assert preview.failed_chunks == []
        assert preview.is_partial is False

    @pytest.mark.asyncio
    async def test_outer_tier_is_suggestion(self, backfill_directory, store, settings_provider, visit_settings):
        engine = _engine(_PingArchive([_group_row("place-q", (0, 4, 4))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert preview.new_visits == []
        suggestion = preview.suggested_visits[0]
        assert suggestion.place_id == "place-q"
        assert suggestion.tier == 2
        assert suggestion.tier_hits == [0, 4, 4]
        assert suggestion.confidence == confidence_score(4, 40.0, visit_settings, weight=0.5)

    @pytest.mark.asyncio
    async def test_cross_tier_suggestion(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([_group_row("place-p", (1, 2, 2))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        suggestion = preview.suggested_visits[0]
        assert suggestion.tier == 2
        assert suggestion.suggestion_reason == "Cross-tier: 1 within 150m + 2 within 300m"

    @pytest.mark.asyncio
    async def test_checkin_alone_is_suggestion(self, backfill_directory, store, settings_provider):
        engine = _engine(
            _PingArchive([_group_row("place-p", (0, 0, 1), checkins=1)]), backfill_directory, store, settings_provider
        )

        preview = await engine.analyze(USER_ID, TRIP_ID)

        suggestion = preview.suggested_visits[0]
        assert suggestion.has_user_checkin is True
        assert suggestion.tier == 3
        assert suggestion.suggestion_reason == "User checked in nearby"

    @pytest.mark.asyncio
    async def test_weak_evidence_dropped(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([_group_row("place-p", (0, 0, 1))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert preview.new_visits == []
        assert preview.suggested_visits == []
        assert preview.locations_scanned == 1

    @pytest.mark.asyncio
    async def test_existing_visit_covers_day(self, backfill_directory, store, settings_provider):
        store.add_visit(make_visit(id="v-existing", arrived_at_utc=_at(DAY, 14), ended_at_utc=_at(DAY, 15)))
        engine = _engine(_PingArchive([_group_row("place-p", (3, 3, 3))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert preview.new_visits == []
        assert [e.visit_id for e in preview.existing_visits] == ["v-existing"]
        assert preview.stale_visits == []

    @pytest.mark.asyncio
    async def test_deleted_place_visit_covers_by_name(self, backfill_directory, store, settings_provider):
        store.add_visit(make_visit(id="v-orphan", place_id=None, ended_at_utc=T0 + timedelta(hours=1)))
        engine = _engine(_PingArchive([_group_row("place-p", (3, 3, 3))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert preview.new_visits == []

    @pytest.mark.asyncio
    async def test_results_sorted_newest_first(self, backfill_directory, store, settings_provider):
        earlier = DAY - timedelta(days=1)
        rows = [
            _group_row("place-q", (2, 2, 2), day=earlier),
            _group_row("place-p", (2, 2, 2), day=earlier),
            _group_row("place-q", (2, 2, 2)),
        ]
        engine = _engine(_PingArchive(rows), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert [(c.visit_date, c.place_id) for c in preview.new_visits] == [
            (DAY, "place-q"),
            (earlier, "place-q"),
            (earlier, "place-p"),
        ]

    @pytest.mark.asyncio
    async def test_trip_without_places(self, store, settings_provider):
        directory = FakePlaceDirectory([], trips={"trip-empty": "Someday"})
        archive = _PingArchive([])
        engine = _engine(archive, directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, "trip-empty")

        assert preview.trip_name == "Someday"
        assert preview.places_analyzed == 0
        assert preview.new_visits == [] and preview.stale_visits == []
        assert archive.calls == []

    @pytest.mark.asyncio
    async def test_unknown_trip(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        with pytest.raises(TripNotFoundError):
            await engine.analyze(USER_ID, "trip-missing")


class TestStaleVisits:
    @pytest.mark.asyncio
    async def test_stale_reasons(self, backfill_directory, store, settings_provider):
        closed = {"ended_at_utc": T0 + timedelta(hours=1)}
        store.add_visit(make_visit(id="v-deleted", place_id=None, arrived_at_utc=T0 - timedelta(days=3), **closed))
        store.add_visit(make_visit(id="v-gone", place_id="place-gone", **closed))
        moved_from = make_place(latitude=offset_north(PLACE_LAT, PLACE_LON, 500)[0])
        store.add_visit(
            make_visit(id="v-moved", snapshot=VisitSnapshot.from_place(moved_from, 100), **closed)
        )
        store.add_visit(make_visit(id="v-unsupported", arrived_at_utc=T0 - timedelta(days=1), **closed))
        store.add_visit(
            make_visit(
                id="v-manual",
                arrived_at_utc=T0 - timedelta(days=2),
                source=VisitSource.MANUAL,
                **closed,
            )
        )
        engine = _engine(_PingArchive([_group_row("place-p", (3, 3, 3))]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        reasons = {s.visit_id: s.reason for s in preview.stale_visits}
        assert reasons == {
            "v-deleted": REASON_PLACE_DELETED,
            "v-gone": REASON_PLACE_GONE,
            "v-moved": REASON_PLACE_MOVED,
            "v-unsupported": REASON_NO_PINGS,
        }
        moved = next(s for s in preview.stale_visits if s.visit_id == "v-moved")
        assert moved.distance_m == pytest.approx(500, abs=1)
        assert [e.visit_id for e in preview.existing_visits] == ["v-manual"]

    @pytest.mark.asyncio
    async def test_out_of_range_visit_not_flagged(self, backfill_directory, store, settings_provider):
        store.add_visit(
            make_visit(id="v-old", arrived_at_utc=T0 - timedelta(days=1), ended_at_utc=T0 - timedelta(hours=23))
        )
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID, from_date=DAY)

        assert preview.stale_visits == []


class TestChunking:
    @pytest.mark.asyncio
    async def test_one_query_per_chunk(self, backfill_directory, store, settings_provider):
        archive = _PingArchive([_group_row("place-p", (2, 2, 2)), _group_row("place-q", (2, 2, 2))])
        engine = _engine(archive, backfill_directory, store, settings_provider, chunk_size=1)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert len(archive.calls) == 2
        assert "place-r" not in set().union(*archive.calls)
        assert {c.place_id for c in preview.new_visits} == {"place-p", "place-q"}

    @pytest.mark.asyncio
    async def test_failed_chunk_reported_rest_completes(self, backfill_directory, store, settings_provider):
        place_q = make_place(place_id="place-q", latitude=Q_LAT, longitude=Q_LON)
        store.add_visit(
            make_visit(place=place_q, id="v-q", arrived_at_utc=T0 - timedelta(days=1), ended_at_utc=T0)
        )
        archive = _PingArchive([_group_row("place-p", (2, 2, 2))], failing={"place-q"})
        engine = _engine(archive, backfill_directory, store, settings_provider, chunk_size=1)

        with patch("services.visits.backfill.engine.report_exception") as report:
            preview = await engine.analyze(USER_ID, TRIP_ID)

        assert [c.place_id for c in preview.new_visits] == ["place-p"]
        assert preview.is_partial is True
        failed = preview.failed_chunks[0]
        assert failed.chunk_index == 1
        assert failed.place_ids == ["place-q"]
        # 1 call for place-p plus 3 attempts for place-q
        assert len(archive.calls) == 4
        report.assert_called_once()
        # Visits at a place that could not be scanned are not flagged unsupported
        assert preview.stale_visits == []

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, backfill_directory, store, settings_provider):
        archive = _PingArchive([_group_row("place-p", (2, 2, 2))])
        attempts = {"n": 0}

        async def flaky(sql, *args, timeout=None):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise ConnectionError("connection reset")
            return await archive.fetch(sql, *args, timeout=timeout)

        engine = _engine(flaky, backfill_directory, store, settings_provider)

        preview = await engine.analyze(USER_ID, TRIP_ID)

        assert attempts["n"] == 2
        assert preview.failed_chunks == []
        assert len(preview.new_visits) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, backfill_directory, store, settings_provider):
        archive = _PingArchive([])
        engine = _engine(archive, backfill_directory, store, settings_provider)
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(BackfillCancelled):
            await engine.analyze(USER_ID, TRIP_ID, cancel_event=cancel)

        assert archive.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_between_chunks(self, backfill_directory, store, settings_provider):
        cancel = asyncio.Event()
        archive = _PingArchive([])

        async def cancel_after_first(sql, *args, timeout=None):
            cancel.set()
            return await archive.fetch(sql, *args, timeout=timeout)

        engine = _engine(cancel_after_first, backfill_directory, store, settings_provider, chunk_size=1)

        with pytest.raises(BackfillCancelled):
            await engine.analyze(USER_ID, TRIP_ID, cancel_event=cancel)

        assert len(archive.calls) == 1


# ---------------------------------------------------------------------------
# apply() / clear_visits()
# ---------------------------------------------------------------------------


def _create(place_id: str = "place-p", day: date = DAY, hour: int = 9) -> BackfillCreateVisit:
    return BackfillCreateVisit(
        place_id=place_id,
        visit_date=day,
        first_seen_utc=_at(day, hour),
        last_seen_utc=_at(day, hour, 45),
    )


class TestApply:
    @pytest.mark.asyncio
    async def test_creates_closed_backfill_visit(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        result = await engine.apply(USER_ID, TRIP_ID, BackfillSelection(create_visits=[_create()]))

        assert result.success is True
        assert result.visits_created == 1
        [visit] = store.visits.values()
        assert visit.source is VisitSource.BACKFILL
        assert visit.arrived_at_utc == _at(DAY, 9)
        assert visit.ended_at_utc == visit.last_seen_at_utc == _at(DAY, 9, 45)
        assert visit.snapshot.place_name == "Praça do Comércio"

    @pytest.mark.asyncio
    async def test_reapply_is_idempotent(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)
        selection = BackfillSelection(create_visits=[_create()])

        await engine.apply(USER_ID, TRIP_ID, selection)
        second = await engine.apply(USER_ID, TRIP_ID, selection)

        assert second.visits_created == 0
        assert second.skipped == 1
        assert len(store.visits) == 1

    @pytest.mark.asyncio
    async def test_existing_visit_wins(self, backfill_directory, store, settings_provider):
        store.add_visit(make_visit(id="v-live", arrived_at_utc=_at(DAY, 15), ended_at_utc=_at(DAY, 16)))
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        result = await engine.apply(USER_ID, TRIP_ID, BackfillSelection(create_visits=[_create(hour=9)]))

        assert result.visits_created == 0
        assert list(store.visits) == ["v-live"]

    @pytest.mark.asyncio
    async def test_deletes_run_before_creates(self, backfill_directory, store, settings_provider):
        store.add_visit(make_visit(id="v-stale", arrived_at_utc=_at(DAY, 15), ended_at_utc=_at(DAY, 16)))
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)
        selection = BackfillSelection(create_visits=[_create()], delete_visit_ids=["v-stale"])

        result = await engine.apply(USER_ID, TRIP_ID, selection)

        assert result.visits_deleted == 1
        assert result.visits_created == 1
        assert "v-stale" not in store.visits

    @pytest.mark.asyncio
    async def test_confirmed_suggestion_source(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)
        selection = BackfillSelection(confirmed_suggestions=[_create(place_id="place-q")])

        result = await engine.apply(USER_ID, TRIP_ID, selection)

        assert result.suggestions_confirmed == 1
        [visit] = store.visits.values()
        assert visit.source is VisitSource.BACKFILL_USER_CONFIRMED

    @pytest.mark.asyncio
    async def test_duplicates_in_selection_collapse(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)
        selection = BackfillSelection(
            create_visits=[_create(hour=9)],
            confirmed_suggestions=[_create(hour=13)],
        )

        result = await engine.apply(USER_ID, TRIP_ID, selection)

        assert result.visits_created == 1
        assert result.suggestions_confirmed == 0
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_unknown_place_skipped(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        result = await engine.apply(
            USER_ID, TRIP_ID, BackfillSelection(create_visits=[_create(place_id="place-elsewhere")])
        )

        assert result.visits_created == 0
        assert result.skipped == 1
        assert store.visits == {}

    @pytest.mark.asyncio
    async def test_other_users_visits_not_deleted(self, backfill_directory, store, settings_provider):
        store.add_visit(make_visit(id="v-other", user_id="user-2", ended_at_utc=T0))
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        result = await engine.apply(USER_ID, TRIP_ID, BackfillSelection(delete_visit_ids=["v-other"]))

        assert result.visits_deleted == 0
        assert "v-other" in store.visits

    @pytest.mark.asyncio
    async def test_clear_visits(self, backfill_directory, store, settings_provider):
        other_trip = make_place(place_id="place-x", trip_id="trip-2")
        store.add_visit(make_visit(id="v1", ended_at_utc=T0))
        store.add_visit(make_visit(id="v2", source=VisitSource.MANUAL, arrived_at_utc=T0 - timedelta(days=1)))
        store.add_visit(make_visit(place=other_trip, id="v3"))
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        result = await engine.clear_visits(USER_ID, TRIP_ID)

        assert result.visits_deleted == 2
        assert list(store.visits) == ["v3"]


# ---------------------------------------------------------------------------
# get_info()
# ---------------------------------------------------------------------------


class TestGetInfo:
    @pytest.mark.asyncio
    async def test_info(self, backfill_directory, store, settings_provider):
        store.add_visit(make_visit(id="v1", ended_at_utc=T0))
        conn = make_conn(fetchval=12_345)
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider, conn=conn)

        info = await engine.get_info(USER_ID, TRIP_ID)

        assert info.total_places == 3
        assert info.places_with_coordinates == 2
        assert info.estimated_locations == 12_345
        assert info.estimated_seconds == 1
        assert info.existing_visits == 1

    @pytest.mark.asyncio
    async def test_info_trip_without_places(self, store, settings_provider):
        directory = FakePlaceDirectory([], trips={"trip-empty": "Someday"})
        engine = _engine(_PingArchive([]), directory, store, settings_provider, conn=make_conn(fetchval=0))

        info = await engine.get_info(USER_ID, "trip-empty")

        assert info.total_places == 0
        assert info.places_with_coordinates == 0
        assert info.estimated_seconds == 1

    @pytest.mark.asyncio
    async def test_info_unknown_trip(self, backfill_directory, store, settings_provider):
        engine = _engine(_PingArchive([]), backfill_directory, store, settings_provider)

        with pytest.raises(TripNotFoundError):
            await engine.get_info(USER_ID, "trip-missing")
