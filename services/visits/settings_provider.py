"""
Hot-reloadable visit detection thresholds.

The admin dashboard (host application) edits a single row in visit_settings.
VisitSettingsProvider re-reads it at most once per ttl_s seconds, so a change
takes effect on the next ping after the TTL without a restart. When the row
is missing or unreadable, the last good value (or the defaults) is served.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Protocol

from pydantic import BaseModel, Field, model_validator

from services.visits.config import settings as app_settings

logger = logging.getLogger(__name__)

_SELECT_SETTINGS_SQL = """
SELECT required_hits, min_radius_m, max_radius_m, accuracy_multiplier,
       accuracy_reject_m, max_search_radius_m, hit_window_minutes,
       candidate_stale_minutes, visit_end_after_minutes,
       notification_cooldown_hours, suggestion_radius_multiplier,
       notes_snapshot_max_chars
FROM visit_settings
WHERE id = 1
"""


class VisitSettings(BaseModel):
    """Numeric thresholds for detection, cleanup, notification and backfill."""

    required_hits: int = Field(default=2, ge=1)
    min_radius_m: float = Field(default=35.0, gt=0)
    max_radius_m: float = Field(default=100.0, gt=0)
    accuracy_multiplier: float = Field(default=2.0, gt=0)
    # 0 disables accuracy rejection
    accuracy_reject_m: float = Field(default=200.0, ge=0)
    max_search_radius_m: float = Field(default=150.0, gt=0)
    hit_window_minutes: float = Field(default=5.0, gt=0)
    candidate_stale_minutes: float = Field(default=30.0, gt=0)
    visit_end_after_minutes: float = Field(default=45.0, gt=0)
    # -1 or 0: no cooldown
    notification_cooldown_hours: float = Field(default=24.0, ge=-1)
    suggestion_radius_multiplier: float = Field(default=3.0, ge=1.0)
    notes_snapshot_max_chars: int = Field(default=20_000, ge=2)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _radii_ordered(self) -> "VisitSettings":
        if self.max_radius_m < self.min_radius_m:
            raise ValueError("max_radius_m must be >= min_radius_m")
        return self

    @property
    def hit_window(self) -> timedelta:
        return timedelta(minutes=self.hit_window_minutes)

    @property
    def candidate_stale_after(self) -> timedelta:
        return timedelta(minutes=self.candidate_stale_minutes)

    @property
    def visit_end_after(self) -> timedelta:
        return timedelta(minutes=self.visit_end_after_minutes)

    @property
    def notification_cooldown(self) -> timedelta | None:
        """None when the cooldown is disabled."""
        if self.notification_cooldown_hours <= 0:
            return None
        return timedelta(hours=self.notification_cooldown_hours)


class SettingsSource(Protocol):
    async def get(self) -> VisitSettings:
        ...


class StaticSettingsProvider:
    """Fixed settings. Used by tests and one-off tools."""

    def __init__(self, visit_settings: VisitSettings | None = None) -> None:
        self._settings = visit_settings or VisitSettings()

    async def get(self) -> VisitSettings:
        return self._settings


class VisitSettingsProvider:
    """
    Reads visit_settings through an asyncpg pool with a TTL cache.

    Injected dependencies for testability:
      pool  — asyncpg pool (anything with acquire())
      clock — monotonic clock, defaults to time.monotonic
    """

    def __init__(self, pool: Any, ttl_s: float | None = None, clock=time.monotonic) -> None:
        self._pool = pool
        self._ttl_s = app_settings.visit_settings_ttl_s if ttl_s is None else ttl_s
        self._clock = clock
        self._cached: VisitSettings | None = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    async def get(self) -> VisitSettings:
        if self._cached is not None and self._clock() - self._loaded_at < self._ttl_s:
            return self._cached

        async with self._lock:
            # Another waiter may have refreshed while we queued
            if self._cached is not None and self._clock() - self._loaded_at < self._ttl_s:
                return self._cached
            self._cached = await self._load()
            self._loaded_at = self._clock()
            return self._cached

    def invalidate(self) -> None:
        self._loaded_at = float("-inf")

    async def _load(self) -> VisitSettings:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(_SELECT_SETTINGS_SQL)
        except Exception:
            logger.exception("visit settings: load failed, serving %s",
                             "cached values" if self._cached else "defaults")
            return self._cached or VisitSettings()

        if row is None:
            logger.info("visit settings: no row in visit_settings, using defaults")
            return VisitSettings()

        try:
            return VisitSettings(**dict(row))
        except ValueError as exc:
            logger.error("visit settings: invalid row ignored: %s", exc)
            return self._cached or VisitSettings()
