"""Realtime visit detection: spatial matching, candidate tracking, persistence."""

from services.visits.detection.models import (
    LocationPing,
    Place,
    PlaceMatch,
    PlaceVisitEvent,
    VisitCandidate,
    VisitSnapshot,
    VisitSource,
)
from services.visits.detection.places import PlaceDirectory, TripPlaces
from services.visits.detection.service import PingResult, VisitDetectionService
from services.visits.detection.spatial import SpatialMatcher
from services.visits.detection.store import PostgresVisitStore
from services.visits.detection.tracker import (
    TransitionOutcome,
    TransitionResult,
    VisitCandidateTracker,
)

__all__ = [
    "LocationPing",
    "PingResult",
    "Place",
    "PlaceDirectory",
    "PlaceMatch",
    "PlaceVisitEvent",
    "PostgresVisitStore",
    "SpatialMatcher",
    "TransitionOutcome",
    "TransitionResult",
    "TripPlaces",
    "VisitCandidate",
    "VisitCandidateTracker",
    "VisitDetectionService",
    "VisitSnapshot",
    "VisitSource",
]
