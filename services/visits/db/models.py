"""
SQLAlchemy DeclarativeBase models for the tables the visit engine touches.

Two groups:
  - Owned tables (place_visit_candidates, place_visit_events, visit_settings):
    created by db.schema.create_schema(), written by this service.
  - Read-only mirrors (trips, regions, places, locations): owned by the host
    trip-planning application. Declared here so the schema is documented in
    one place; create_schema() never creates or alters them.

Runtime queries go through asyncpg with raw SQL (see detection/store.py,
detection/places.py, backfill/queries.py). These models describe the shape
those queries rely on.
"""

import uuid as _uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

VisitSourceEnum = Enum(
    "realtime", "backfill", "backfill-user-confirmed", "manual",
    name="visit_source", native_enum=False, length=32,
)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Read-only mirrors (host application)
# ---------------------------------------------------------------------------


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Region(Base):
    __tablename__ = "regions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    trip_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)


class Place(Base):
    __tablename__ = "places"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    region_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # Nullable: a place can be planned before it is pinned on the map
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    icon_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    marker_color: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Location(Base):
    """Historical ping archive, one row per accepted location report."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    accuracy_m: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_user_invoked: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (Index("ix_locations_user_id_timestamp_utc", "user_id", "timestamp_utc"),)


# ---------------------------------------------------------------------------
# Owned tables
# ---------------------------------------------------------------------------


class PlaceVisitCandidate(Base):
    """Unconfirmed hit streak. At most one row per (user_id, place_id)."""

    __tablename__ = "place_visit_candidates"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String)
    place_id: Mapped[str] = mapped_column(String)
    first_hit_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_hit_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    consecutive_hits: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("user_id", "place_id", name="uq_place_visit_candidates_user_place"),
        CheckConstraint("consecutive_hits >= 1", name="ck_place_visit_candidates_hits"),
    )


class PlaceVisitEvent(Base):
    """
    A confirmed visit. Snapshot columns are copied at confirmation time and
    never re-derived, so the row survives deletion of its place or trip
    (place_id is then NULL).
    """

    __tablename__ = "place_visit_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String)
    place_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    arrived_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_seen_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at_utc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(VisitSourceEnum, default="realtime")

    trip_id_snapshot: Mapped[str] = mapped_column(String, index=True)
    trip_name_snapshot: Mapped[str] = mapped_column(String)
    region_name_snapshot: Mapped[str] = mapped_column(String)
    place_name_snapshot: Mapped[str] = mapped_column(String)
    place_latitude_snapshot: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    place_longitude_snapshot: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    icon_name_snapshot: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    marker_color_snapshot: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes_html: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # At most one open visit per (user, place)
        Index(
            "ux_place_visit_events_open_user_place",
            "user_id",
            "place_id",
            unique=True,
            postgresql_where=text("ended_at_utc IS NULL"),
        ),
        Index("ix_place_visit_events_user_ended", "user_id", "ended_at_utc"),
        Index("ix_place_visit_events_place_id", "place_id"),
        CheckConstraint(
            "ended_at_utc IS NULL OR ended_at_utc >= arrived_at_utc",
            name="ck_place_visit_events_ended_after_arrival",
        ),
    )


class VisitSettingsRow(Base):
    """Single-row table (id = 1) with the admin-tunable detection thresholds."""

    __tablename__ = "visit_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    required_hits: Mapped[int] = mapped_column(Integer, default=2)
    min_radius_m: Mapped[float] = mapped_column(Float, default=35.0)
    max_radius_m: Mapped[float] = mapped_column(Float, default=100.0)
    accuracy_multiplier: Mapped[float] = mapped_column(Float, default=2.0)
    accuracy_reject_m: Mapped[float] = mapped_column(Float, default=200.0)
    max_search_radius_m: Mapped[float] = mapped_column(Float, default=150.0)
    hit_window_minutes: Mapped[float] = mapped_column(Float, default=5.0)
    candidate_stale_minutes: Mapped[float] = mapped_column(Float, default=30.0)
    visit_end_after_minutes: Mapped[float] = mapped_column(Float, default=45.0)
    notification_cooldown_hours: Mapped[float] = mapped_column(Float, default=24.0)
    suggestion_radius_multiplier: Mapped[float] = mapped_column(Float, default=3.0)
    notes_snapshot_max_chars: Mapped[int] = mapped_column(Integer, default=20_000)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


OWNED_TABLES = [
    PlaceVisitCandidate.__table__,
    PlaceVisitEvent.__table__,
    VisitSettingsRow.__table__,
]
