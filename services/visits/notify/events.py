"""visit_started payload published to the per-user visits channel."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from services.visits.detection.models import PlaceVisitEvent

VISIT_STARTED = "visit_started"


def user_channel(user_id: str) -> str:
    return f"user-visits-{user_id}"


class VisitStartedEvent(BaseModel):
    """Serialized with camelCase keys (by_alias) for the browser/mobile clients."""

    model_config = {"populate_by_name": True, "frozen": True}

    type: Literal["visit_started"] = VISIT_STARTED
    visit_id: str = Field(alias="visitId")
    trip_id: str = Field(alias="tripId")
    trip_name: str = Field(alias="tripName")
    place_id: str | None = Field(alias="placeId")
    place_name: str = Field(alias="placeName")
    region_name: str = Field(alias="regionName")
    arrived_at_utc: datetime = Field(alias="arrivedAtUtc")
    latitude: float | None = None
    longitude: float | None = None
    icon_name: str | None = Field(default=None, alias="iconName")
    marker_color: str | None = Field(default=None, alias="markerColor")

    @classmethod
    def from_visit(cls, visit: PlaceVisitEvent) -> "VisitStartedEvent":
        snap = visit.snapshot
        return cls(
            visit_id=visit.id,
            trip_id=snap.trip_id,
            trip_name=snap.trip_name,
            place_id=visit.place_id,
            place_name=snap.place_name,
            region_name=snap.region_name,
            arrived_at_utc=visit.arrived_at_utc,
            latitude=snap.latitude,
            longitude=snap.longitude,
            icon_name=snap.icon_name,
            marker_color=snap.marker_color,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
