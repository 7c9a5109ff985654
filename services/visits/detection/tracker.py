"""
VisitCandidateTracker — per (user, place) hit-streak state machine.

States: no candidate -> tracking(hits, first_hit, last_hit) -> confirmed visit
(or expired, deleted by the cleanup sweep).

On a qualifying hit at time t:
  1. An open visit exists for (user, place): last_seen = max(last_seen, t).
     Candidate state is not touched. If the sweep closed the visit after it
     was read, the hit falls through to step 2 or 3.
  2. No candidate: start one with hits=1, first_hit=last_hit=t.
  3. Candidate exists and t - last_hit <= hit_window: hits += 1.
     A larger gap resets the streak to hits=1 starting at t.
  4. hits >= required_hits: delete the candidate and open a realtime visit
     with arrived = first_hit, last_seen = latest hit, snapshot copied from the place.

Steps 1-4 run in one store.pair_transaction(), so concurrent pings for the
same pair are serialized. Pings older than the streak (late deliveries from a
device buffer) count toward it when they fall inside the hit window and are
otherwise ignored; no timestamp ever moves backwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import asyncpg

from services.visits.detection.models import (
    Place,
    PlaceVisitEvent,
    VisitCandidate,
    VisitSnapshot,
    VisitSource,
)
from services.visits.detection.store import new_visit_id
from services.visits.settings_provider import VisitSettings

logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    VISIT_REFRESHED = "visit_refreshed"
    CANDIDATE_CREATED = "candidate_created"
    CANDIDATE_INCREMENTED = "candidate_incremented"
    CANDIDATE_RESET = "candidate_reset"
    VISIT_CONFIRMED = "visit_confirmed"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    STALE_HIT_IGNORED = "stale_hit_ignored"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    place_id: str
    outcome: TransitionOutcome
    hits: int = 0
    visit: PlaceVisitEvent | None = None

    @property
    def confirmed(self) -> bool:
        return self.outcome is TransitionOutcome.VISIT_CONFIRMED


def advance_candidate(
    candidate: VisitCandidate | None,
    *,
    user_id: str,
    place_id: str,
    at: datetime,
    hit_window: timedelta,
) -> tuple[VisitCandidate | None, TransitionOutcome]:
    """
    Pure streak transition. Returns the new candidate state and what happened.

    A None candidate in the result means the hit was ignored and nothing
    should be written.
    """
    if candidate is None:
        return VisitCandidate.start(user_id, place_id, at), TransitionOutcome.CANDIDATE_CREATED

    gap = at - candidate.last_hit_utc
    if gap > hit_window:
        return VisitCandidate.start(user_id, place_id, at), TransitionOutcome.CANDIDATE_RESET

    if gap < timedelta(0) and candidate.first_hit_utc - at > hit_window:
        return None, TransitionOutcome.STALE_HIT_IGNORED

    candidate.consecutive_hits += 1
    candidate.first_hit_utc = min(candidate.first_hit_utc, at)
    candidate.last_hit_utc = max(candidate.last_hit_utc, at)
    return candidate, TransitionOutcome.CANDIDATE_INCREMENTED


class VisitCandidateTracker:
    """
    Injected dependencies for testability:
      store — PostgresVisitStore (anything with pair_transaction())
    """

    def __init__(self, store: Any) -> None:
        self._store = store

    async def record_hit(
        self,
        user_id: str,
        place: Place,
        at: datetime,
        settings: VisitSettings,
    ) -> TransitionResult:
        place_id = place.place_id
        try:
            async with self._store.pair_transaction(user_id, place_id) as tx:
                open_visit = await tx.get_open_visit()
                if open_visit is not None:
                    if await tx.touch_visit(open_visit.id, at):
                        return TransitionResult(place_id, TransitionOutcome.VISIT_REFRESHED, visit=open_visit)
                    # Closed by the sweep since the read; the hit starts a new streak
                    logger.debug("Visit closed before refresh: visit=%s user=%s", open_visit.id, user_id)

                candidate, outcome = advance_candidate(
                    await tx.get_candidate(),
                    user_id=user_id,
                    place_id=place_id,
                    at=at,
                    hit_window=settings.hit_window,
                )
                if candidate is None:
                    logger.debug("Stale hit ignored: user=%s place=%s at=%s", user_id, place_id, at)
                    return TransitionResult(place_id, outcome)

                if candidate.consecutive_hits < settings.required_hits:
                    await tx.save_candidate(candidate)
                    return TransitionResult(place_id, outcome, hits=candidate.consecutive_hits)

                visit = PlaceVisitEvent(
                    id=new_visit_id(),
                    user_id=user_id,
                    place_id=place_id,
                    arrived_at_utc=candidate.first_hit_utc,
                    last_seen_at_utc=candidate.last_hit_utc,
                    ended_at_utc=None,
                    source=VisitSource.REALTIME,
                    snapshot=VisitSnapshot.from_place(place, settings.notes_snapshot_max_chars),
                )
                await tx.delete_candidate()
                inserted = await tx.insert_open_visit(visit)
        except asyncpg.UniqueViolationError:
            logger.info("Concurrent confirmation lost: user=%s place=%s", user_id, place_id)
            return TransitionResult(place_id, TransitionOutcome.DUPLICATE_SUPPRESSED)

        if not inserted:
            logger.info("Open visit already present: user=%s place=%s", user_id, place_id)
            return TransitionResult(place_id, TransitionOutcome.DUPLICATE_SUPPRESSED)

        logger.info(
            "Visit confirmed: visit=%s user=%s place=%s arrived=%s hits=%d",
            visit.id,
            user_id,
            place_id,
            visit.arrived_at_utc.isoformat(),
            candidate.consecutive_hits,
        )
        return TransitionResult(
            place_id,
            TransitionOutcome.VISIT_CONFIRMED,
            hits=candidate.consecutive_hits,
            visit=visit,
        )
