"""
SpatialMatcher — which planned places is this ping at?

Two-stage match:
  1. Coarse: PlaceDirectory.find_within() with settings.max_search_radius_m,
     an index-friendly bound independent of ping accuracy.
  2. Exact: haversine distance to each coarse hit, kept when within the
     accuracy-scaled detection radius.

Filtering rules:
  - accuracy worse than accuracy_reject_m rejects the ping outright
    (accuracy_reject_m = 0 disables rejection; missing accuracy never rejects)
  - detection radius = clamp(accuracy * multiplier, min_radius_m, max_radius_m)
  - results sorted nearest first
"""

from __future__ import annotations

import logging
from typing import Any

from services.visits.detection.geo import detection_radius_m, haversine_m
from services.visits.detection.models import LocationPing, PlaceMatch
from services.visits.settings_provider import VisitSettings

logger = logging.getLogger(__name__)


def should_reject_for_accuracy(accuracy_m: float | None, settings: VisitSettings) -> bool:
    if settings.accuracy_reject_m == 0:
        return False
    return accuracy_m is not None and accuracy_m > settings.accuracy_reject_m


def effective_radius_m(accuracy_m: float | None, settings: VisitSettings) -> float:
    return detection_radius_m(
        accuracy_m,
        multiplier=settings.accuracy_multiplier,
        min_radius_m=settings.min_radius_m,
        max_radius_m=settings.max_radius_m,
    )


class SpatialMatcher:
    """
    Injected dependencies for testability:
      places — PlaceDirectory (anything with find_within())
    """

    def __init__(self, places: Any) -> None:
        self._places = places

    async def find_nearby_places(
        self,
        ping: LocationPing,
        settings: VisitSettings,
    ) -> list[PlaceMatch]:
        if should_reject_for_accuracy(ping.accuracy_m, settings):
            logger.debug(
                "Ping rejected for user=%s: accuracy %.1fm exceeds %.1fm",
                ping.user_id,
                ping.accuracy_m,
                settings.accuracy_reject_m,
            )
            return []

        radius = effective_radius_m(ping.accuracy_m, settings)

        try:
            coarse = await self._places.find_within(
                ping.user_id,
                ping.latitude,
                ping.longitude,
                settings.max_search_radius_m,
            )
        except Exception:
            logger.exception(
                "Spatial query failed for user=%s at (%f,%f)",
                ping.user_id,
                ping.latitude,
                ping.longitude,
            )
            return []

        matches: list[PlaceMatch] = []
        for place in coarse:
            if not place.has_location:
                continue
            distance = haversine_m(ping.latitude, ping.longitude, place.latitude, place.longitude)
            if distance <= radius:
                matches.append(PlaceMatch(place=place, distance_m=distance))

        matches.sort(key=lambda m: m.distance_m)

        logger.debug(
            "Spatial match: user=%s radius=%.1fm coarse=%d matched=%d",
            ping.user_id,
            radius,
            len(coarse),
            len(matches),
        )
        return matches
