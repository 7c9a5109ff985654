"""
Backfill preview / apply DTOs.

Python attribute names are snake_case; the host application's JSON API
serializes them by alias (camelCase) with model_dump(by_alias=True).
"""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator

from services.visits.detection.models import ensure_utc

# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


class BackfillCandidate(BaseModel):
    """A (place, UTC date) with enough tier-1 pings to count as a visit."""

    place_id: str = Field(alias="placeId")
    place_name: str = Field(alias="placeName")
    region_name: str = Field(alias="regionName")
    visit_date: date = Field(alias="visitDate")
    first_seen_utc: datetime = Field(alias="firstSeenUtc")
    last_seen_utc: datetime = Field(alias="lastSeenUtc")
    location_count: int = Field(alias="locationCount")
    avg_distance_m: float = Field(alias="avgDistanceMeters")
    confidence: int = Field(ge=0, le=100)
    tier: int = 1
    latitude: float | None = None
    longitude: float | None = None
    icon_name: str | None = Field(default=None, alias="iconName")
    marker_color: str | None = Field(default=None, alias="markerColor")

    model_config = {"populate_by_name": True}


class SuggestedVisit(BaseModel):
    """Weaker evidence the user may confirm ("consider also")."""

    place_id: str = Field(alias="placeId")
    place_name: str = Field(alias="placeName")
    region_name: str = Field(alias="regionName")
    visit_date: date = Field(alias="visitDate")
    first_seen_utc: datetime = Field(alias="firstSeenUtc")
    last_seen_utc: datetime = Field(alias="lastSeenUtc")
    min_distance_m: float = Field(alias="minDistanceMeters")
    tier_hits: list[int] = Field(alias="tierHits")
    hits_total: int = Field(alias="hitsTotal")
    has_user_checkin: bool = Field(alias="hasUserCheckin")
    suggestion_reason: str = Field(alias="suggestionReason")
    confidence: int = Field(ge=0, le=100)
    tier: int
    latitude: float | None = None
    longitude: float | None = None
    icon_name: str | None = Field(default=None, alias="iconName")
    marker_color: str | None = Field(default=None, alias="markerColor")

    model_config = {"populate_by_name": True}


class StaleVisit(BaseModel):
    visit_id: str = Field(alias="visitId")
    place_id: str | None = Field(default=None, alias="placeId")
    place_name: str = Field(alias="placeName")
    region_name: str = Field(alias="regionName")
    visit_date: date = Field(alias="visitDate")
    reason: str
    distance_m: float | None = Field(default=None, alias="distanceMeters")

    model_config = {"populate_by_name": True}


class ExistingVisit(BaseModel):
    visit_id: str = Field(alias="visitId")
    place_id: str | None = Field(default=None, alias="placeId")
    place_name: str = Field(alias="placeName")
    region_name: str = Field(alias="regionName")
    visit_date: date = Field(alias="visitDate")
    arrived_at_utc: datetime = Field(alias="arrivedAtUtc")
    source: str
    is_open: bool = Field(alias="isOpen")

    model_config = {"populate_by_name": True}


class FailedChunk(BaseModel):
    """A place chunk whose query still failed after every retry."""

    chunk_index: int = Field(alias="chunkIndex")
    place_ids: list[str] = Field(alias="placeIds")
    error: str

    model_config = {"populate_by_name": True}


class BackfillPreview(BaseModel):
    trip_id: str = Field(alias="tripId")
    trip_name: str = Field(alias="tripName")
    locations_scanned: int = Field(default=0, alias="locationsScanned")
    places_analyzed: int = Field(default=0, alias="placesAnalyzed")
    analysis_duration_ms: int = Field(default=0, alias="analysisDurationMs")
    new_visits: list[BackfillCandidate] = Field(default_factory=list, alias="newVisits")
    suggested_visits: list[SuggestedVisit] = Field(default_factory=list, alias="suggestedVisits")
    stale_visits: list[StaleVisit] = Field(default_factory=list, alias="staleVisits")
    existing_visits: list[ExistingVisit] = Field(default_factory=list, alias="existingVisits")
    failed_chunks: list[FailedChunk] = Field(default_factory=list, alias="failedChunks")

    model_config = {"populate_by_name": True}

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_chunks)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


class BackfillCreateVisit(BaseModel):
    place_id: str = Field(alias="placeId")
    visit_date: date | None = Field(default=None, alias="visitDate")
    first_seen_utc: datetime = Field(alias="firstSeenUtc")
    last_seen_utc: datetime = Field(alias="lastSeenUtc")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _ordered(self) -> "BackfillCreateVisit":
        if self.last_seen_utc < self.first_seen_utc:
            raise ValueError("lastSeenUtc must not precede firstSeenUtc")
        # Apply dedups on the UTC date of firstSeenUtc
        if self.visit_date is not None and self.visit_date != ensure_utc(self.first_seen_utc).date():
            raise ValueError("visitDate must be the UTC date of firstSeenUtc")
        return self


class BackfillSelection(BaseModel):
    """What the user ticked in the preview."""

    create_visits: list[BackfillCreateVisit] = Field(default_factory=list, alias="createVisits")
    confirmed_suggestions: list[BackfillCreateVisit] = Field(
        default_factory=list, alias="confirmedSuggestions"
    )
    delete_visit_ids: list[str] = Field(default_factory=list, alias="deleteVisitIds")

    model_config = {"populate_by_name": True}


class BackfillResult(BaseModel):
    success: bool = True
    visits_created: int = Field(default=0, alias="visitsCreated")
    suggestions_confirmed: int = Field(default=0, alias="suggestionsConfirmed")
    visits_deleted: int = Field(default=0, alias="visitsDeleted")
    skipped: int = 0
    message: str | None = None

    model_config = {"populate_by_name": True}


class BackfillInfo(BaseModel):
    trip_id: str = Field(alias="tripId")
    trip_name: str = Field(alias="tripName")
    total_places: int = Field(alias="totalPlaces")
    places_with_coordinates: int = Field(alias="placesWithCoordinates")
    estimated_locations: int = Field(alias="estimatedLocations")
    estimated_seconds: int = Field(alias="estimatedSeconds")
    existing_visits: int = Field(alias="existingVisits")

    model_config = {"populate_by_name": True}
