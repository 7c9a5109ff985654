"""
Domain types for visit detection.

Rows come back from asyncpg as Record objects; the from_row() helpers map
them onto these dataclasses so the rest of the engine never touches raw rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

ELLIPSIS = "…"


class VisitSource(str, Enum):
    """How a visit record came to exist."""

    REALTIME = "realtime"
    BACKFILL = "backfill"
    BACKFILL_USER_CONFIRMED = "backfill-user-confirmed"
    MANUAL = "manual"


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_notes(notes: str | None, max_chars: int) -> str | None:
    if not notes or len(notes) <= max_chars:
        return notes
    return notes[: max_chars - 1] + ELLIPSIS


@dataclass(frozen=True, slots=True)
class LocationPing:
    """A single accepted location report. Consumed, never stored here."""

    user_id: str
    latitude: float
    longitude: float
    accuracy_m: float | None
    timestamp_utc: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp_utc", ensure_utc(self.timestamp_utc))


@dataclass(frozen=True, slots=True)
class Place:
    """Read-only view of a planned place joined with its region and trip."""

    place_id: str
    trip_id: str
    trip_name: str
    region_name: str
    name: str
    latitude: float | None
    longitude: float | None
    icon_name: str | None = None
    marker_color: str | None = None
    notes_html: str | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Place":
        return cls(
            place_id=str(row["place_id"]),
            trip_id=str(row["trip_id"]),
            trip_name=row["trip_name"] or "",
            region_name=row["region_name"] or "",
            name=row["place_name"] or "",
            latitude=row["latitude"],
            longitude=row["longitude"],
            icon_name=row["icon_name"],
            marker_color=row["marker_color"],
            notes_html=row["notes"],
        )


@dataclass(frozen=True, slots=True)
class PlaceMatch:
    """A place within the detection radius of a ping."""

    place: Place
    distance_m: float


@dataclass(frozen=True, slots=True)
class VisitSnapshot:
    """Place/trip attributes frozen into a visit at confirmation time."""

    trip_id: str
    trip_name: str
    region_name: str
    place_name: str
    latitude: float | None
    longitude: float | None
    icon_name: str | None = None
    marker_color: str | None = None
    notes_html: str | None = None

    @classmethod
    def from_place(cls, place: Place, notes_max_chars: int) -> "VisitSnapshot":
        return cls(
            trip_id=place.trip_id,
            trip_name=place.trip_name,
            region_name=place.region_name,
            place_name=place.name,
            latitude=place.latitude,
            longitude=place.longitude,
            icon_name=place.icon_name,
            marker_color=place.marker_color,
            notes_html=truncate_notes(place.notes_html, notes_max_chars),
        )


@dataclass(slots=True)
class VisitCandidate:
    """Unconfirmed hit streak for one (user, place)."""

    user_id: str
    place_id: str
    first_hit_utc: datetime
    last_hit_utc: datetime
    consecutive_hits: int = 1

    @classmethod
    def start(cls, user_id: str, place_id: str, at: datetime) -> "VisitCandidate":
        return cls(user_id=user_id, place_id=place_id, first_hit_utc=at, last_hit_utc=at)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VisitCandidate":
        return cls(
            user_id=row["user_id"],
            place_id=str(row["place_id"]),
            first_hit_utc=ensure_utc(row["first_hit_utc"]),
            last_hit_utc=ensure_utc(row["last_hit_utc"]),
            consecutive_hits=row["consecutive_hits"],
        )


@dataclass(slots=True)
class PlaceVisitEvent:
    """A confirmed visit. Open while ended_at_utc is None."""

    id: str
    user_id: str
    place_id: str | None
    arrived_at_utc: datetime
    last_seen_at_utc: datetime
    ended_at_utc: datetime | None
    source: VisitSource
    snapshot: VisitSnapshot = field(repr=False)

    @property
    def is_open(self) -> bool:
        return self.ended_at_utc is None

    @property
    def observed_dwell_minutes(self) -> float | None:
        if self.last_seen_at_utc <= self.arrived_at_utc:
            return None
        return (self.last_seen_at_utc - self.arrived_at_utc).total_seconds() / 60.0

    @property
    def visit_date(self):
        """UTC calendar date of arrival, the backfill dedup key."""
        return self.arrived_at_utc.date()

    def closed(self) -> "PlaceVisitEvent":
        return replace(self, ended_at_utc=self.last_seen_at_utc)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlaceVisitEvent":
        ended = row["ended_at_utc"]
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            place_id=str(row["place_id"]) if row["place_id"] is not None else None,
            arrived_at_utc=ensure_utc(row["arrived_at_utc"]),
            last_seen_at_utc=ensure_utc(row["last_seen_at_utc"]),
            ended_at_utc=ensure_utc(ended) if ended is not None else None,
            source=VisitSource(row["source"] or VisitSource.REALTIME.value),
            snapshot=VisitSnapshot(
                trip_id=str(row["trip_id_snapshot"]),
                trip_name=row["trip_name_snapshot"] or "",
                region_name=row["region_name_snapshot"] or "",
                place_name=row["place_name_snapshot"] or "",
                latitude=row["place_latitude_snapshot"],
                longitude=row["place_longitude_snapshot"],
                icon_name=row["icon_name_snapshot"],
                marker_color=row["marker_color_snapshot"],
                notes_html=row["notes_html"],
            ),
        )
