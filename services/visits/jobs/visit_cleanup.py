"""
Visit lifecycle sweep.

Closes open visits that have not been seen for visit_end_after_minutes and
deletes candidates whose last hit is older than candidate_stale_minutes.

Key design decisions:
- ended_at_utc = last_seen_at_utc, never the sweep time, so dwell time
  reflects the last confirmed sighting.
- Read, then guarded write: the UPDATE/DELETE re-checks the timestamp it
  read, so a visit or candidate refreshed by live ingest in between is left
  alone. No row locks are held across the batch.
- Batched (SWEEP_BATCH_SIZE rows per read) so a backlog after downtime does
  not load every stale row at once.
- Errors are logged and reported; the job never raises into the scheduler.
  Whatever was not processed is picked up by the next run.

Entry point:
    async def run_visit_cleanup(store, settings_provider, now=None)
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, TypedDict

from services.visits.detection.models import ensure_utc
from services.visits.observability import report_exception

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 500


class CleanupResult(TypedDict):
    status: str  # "success" | "error"
    visits_closed: int
    candidates_deleted: int
    duration_ms: int


# ---------------------------------------------------------------------------
# Sweep steps
# ---------------------------------------------------------------------------


async def _close_stale_visits(store: Any, cutoff: datetime) -> int:
    closed = 0
    while True:
        batch = await store.list_stale_open_visits(cutoff, SWEEP_BATCH_SIZE)
        progressed = 0
        for visit in batch:
            if await store.close_visit_if_unchanged(visit.id, visit.last_seen_at_utc):
                progressed += 1
                logger.debug(
                    "visit_cleanup: closed visit=%s user=%s ended=%s",
                    visit.id,
                    visit.user_id,
                    visit.last_seen_at_utc.isoformat(),
                )
            else:
                logger.debug("visit_cleanup: visit=%s changed since read, skipped", visit.id)
        closed += progressed
        if len(batch) < SWEEP_BATCH_SIZE or progressed == 0:
            return closed


async def _delete_stale_candidates(store: Any, cutoff: datetime) -> int:
    deleted = 0
    while True:
        batch = await store.list_stale_candidates(cutoff, SWEEP_BATCH_SIZE)
        progressed = 0
        for candidate in batch:
            if await store.delete_candidate_if_unchanged(
                candidate.user_id, candidate.place_id, candidate.last_hit_utc
            ):
                progressed += 1
        deleted += progressed
        if len(batch) < SWEEP_BATCH_SIZE or progressed == 0:
            return deleted


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


async def run_visit_cleanup(
    store: Any,
    settings_provider: Any,
    now: datetime | None = None,
) -> CleanupResult:
    """
    Run one sweep.

    Args:
        store:             PostgresVisitStore (or any object with the sweep queries).
        settings_provider: anything with async get() -> VisitSettings.
        now:               sweep reference time, defaults to the current UTC time.

    Returns:
        A CleanupResult dict::

            {
                "status": "success" | "error",
                "visits_closed": int,
                "candidates_deleted": int,
                "duration_ms": int,
            }
    """
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    start_ts = time.monotonic()
    visits_closed = 0
    candidates_deleted = 0
    status = "error"

    try:
        visit_settings = await settings_provider.get()
        visits_closed = await _close_stale_visits(store, now - visit_settings.visit_end_after)
        candidates_deleted = await _delete_stale_candidates(
            store, now - visit_settings.candidate_stale_after
        )
        status = "success"
    except Exception as exc:
        logger.error(
            "visit_cleanup: failed after closing %d visits, deleting %d candidates: %s",
            visits_closed,
            candidates_deleted,
            exc,
            exc_info=True,
        )
        report_exception(exc)

    duration_ms = int((time.monotonic() - start_ts) * 1000)
    logger.info(
        "visit_cleanup: %s visits_closed=%d candidates_deleted=%d duration_ms=%d",
        status,
        visits_closed,
        candidates_deleted,
        duration_ms,
    )
    return {
        "status": status,
        "visits_closed": visits_closed,
        "candidates_deleted": candidates_deleted,
        "duration_ms": duration_ms,
    }


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------


async def main() -> None:
    """Standalone entry point for running from cron or Cloud Run Job."""
    from services.visits.db.engine import standalone_pool
    from services.visits.detection.store import PostgresVisitStore
    from services.visits.observability import configure_logging, setup_sentry
    from services.visits.settings_provider import VisitSettingsProvider

    configure_logging()
    setup_sentry()

    async with standalone_pool() as pool:
        result = await run_visit_cleanup(
            PostgresVisitStore(pool),
            VisitSettingsProvider(pool, ttl_s=0),
        )
        print(f"visit_cleanup complete: {result}")


if __name__ == "__main__":
    asyncio.run(main())
