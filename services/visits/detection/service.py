"""
VisitDetectionService — ping ingestion entry point.

Flow for process_ping():
  1. Drop pings with non-finite / out-of-range coordinates (silent filter).
  2. Load current VisitSettings (hot-reloaded, TTL cached).
  3. SpatialMatcher: every place within the accuracy-scaled radius.
  4. VisitCandidateTracker: one locked unit of work per matched place.
  5. After each unit of work has committed, hand confirmed visits to the
     NotificationDispatcher (fire-and-forget).

A failure on one place is logged and collected; the remaining places are
still processed. Manual visits and explicit ends bypass the candidate stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from services.visits.detection.geo import is_valid_coordinate
from services.visits.detection.models import (
    LocationPing,
    PlaceVisitEvent,
    VisitSnapshot,
    VisitSource,
    ensure_utc,
)
from services.visits.detection.spatial import SpatialMatcher
from services.visits.detection.store import new_visit_id
from services.visits.detection.tracker import TransitionResult, VisitCandidateTracker
from services.visits.errors import PlaceNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class PingResult:
    """Summary of what one ping did."""

    user_id: str
    accepted: bool
    transitions: list[TransitionResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def confirmed_visits(self) -> list[PlaceVisitEvent]:
        return [t.visit for t in self.transitions if t.confirmed and t.visit is not None]


class VisitDetectionService:
    """
    Injected dependencies for testability:
      places            — PlaceDirectory (find_within, get_place)
      store             — PostgresVisitStore
      settings_provider — anything with async get() -> VisitSettings
      dispatcher        — NotificationDispatcher, or None to skip notifications
    """

    def __init__(
        self,
        places: Any,
        store: Any,
        settings_provider: Any,
        dispatcher: Any = None,
    ) -> None:
        self._places = places
        self._store = store
        self._settings_provider = settings_provider
        self._dispatcher = dispatcher
        self._matcher = SpatialMatcher(places)
        self._tracker = VisitCandidateTracker(store)

    async def process_ping(self, ping: LocationPing) -> PingResult:
        result = PingResult(user_id=ping.user_id, accepted=False)

        if not is_valid_coordinate(ping.latitude, ping.longitude):
            logger.debug("Ping ignored: invalid coordinates user=%s", ping.user_id)
            return result

        visit_settings = await self._settings_provider.get()
        matches = await self._matcher.find_nearby_places(ping, visit_settings)
        result.accepted = True

        for match in matches:
            try:
                transition = await self._tracker.record_hit(
                    ping.user_id,
                    match.place,
                    ping.timestamp_utc,
                    visit_settings,
                )
            except Exception as exc:
                logger.exception(
                    "Visit transition failed: user=%s place=%s",
                    ping.user_id,
                    match.place.place_id,
                )
                result.warnings.append(f"Place {match.place.place_id} failed: {exc}")
                continue

            result.transitions.append(transition)
            if transition.confirmed and self._dispatcher is not None:
                self._dispatcher.dispatch(transition.visit, visit_settings)

        if result.transitions:
            logger.debug(
                "Ping processed: user=%s matched=%d outcomes=%s",
                ping.user_id,
                len(matches),
                ",".join(t.outcome.value for t in result.transitions),
            )
        return result

    async def record_manual_visit(
        self,
        user_id: str,
        place_id: str,
        arrived_at_utc: datetime,
        ended_at_utc: datetime | None = None,
    ) -> PlaceVisitEvent | None:
        """
        Record a user-declared visit (check-in). Returns None when an open
        visit for the same place already exists and the new one would be open too.
        """
        place = await self._places.get_place(user_id, place_id)
        if place is None:
            raise PlaceNotFoundError(place_id, user_id)

        arrived = ensure_utc(arrived_at_utc)
        ended = ensure_utc(ended_at_utc) if ended_at_utc is not None else None
        if ended is not None and ended < arrived:
            raise ValueError("ended_at_utc must not precede arrived_at_utc")

        visit_settings = await self._settings_provider.get()
        visit = PlaceVisitEvent(
            id=new_visit_id(),
            user_id=user_id,
            place_id=place.place_id,
            arrived_at_utc=arrived,
            last_seen_at_utc=ended or arrived,
            ended_at_utc=ended,
            source=VisitSource.MANUAL,
            snapshot=VisitSnapshot.from_place(place, visit_settings.notes_snapshot_max_chars),
        )
        if not await self._store.insert_manual_visit(visit):
            logger.info("Manual visit skipped, open visit exists: user=%s place=%s", user_id, place_id)
            return None

        logger.info("Manual visit recorded: visit=%s user=%s place=%s", visit.id, user_id, place_id)
        return visit

    async def end_visit(self, user_id: str, visit_id: str) -> PlaceVisitEvent | None:
        """Close a visit at its last sighting. Ending a closed visit is a no-op."""
        visit = await self._store.end_visit(user_id, visit_id)
        if visit is None:
            logger.info("End visit: visit=%s not found for user=%s", visit_id, user_id)
        return visit

    async def recent_visits(self, user_id: str, since: datetime, limit: int = 50) -> list[PlaceVisitEvent]:
        return await self._store.recent_visits(user_id, ensure_utc(since), limit)
