"""
NotificationDispatcher — best-effort visit_started emission.

Decoupled from persistence: VisitDetectionService calls dispatch() only
after the visit's transaction has committed, and dispatch() returns
immediately. Delivery failures are logged and dropped.

Cooldown (per user + place):
  notification_cooldown_hours > 0   at most one notification per window,
                                    claimed with SET key 1 NX EX <seconds>
  notification_cooldown_hours <= 0  no cooldown, every visit notifies

Graceful degradation: with redis=None every call is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from services.visits.detection.models import PlaceVisitEvent
from services.visits.notify.events import VisitStartedEvent, user_channel
from services.visits.notify.transport import RedisBroadcaster
from services.visits.observability import report_exception
from services.visits.settings_provider import VisitSettings

logger = logging.getLogger(__name__)

COOLDOWN_KEY = "visits:notify:cooldown:{user_id}:{place_id}"


def _cooldown_key(visit: PlaceVisitEvent) -> str:
    return COOLDOWN_KEY.format(user_id=visit.user_id, place_id=visit.place_id or visit.id)


class NotificationDispatcher:
    """
    Injected dependencies for testability:
      redis             — redis.asyncio client, or None to disable
      settings_provider — anything with async get() -> VisitSettings
      broadcaster       — defaults to RedisBroadcaster(redis)
    """

    def __init__(self, redis: Any, settings_provider: Any, broadcaster: Any = None) -> None:
        self._redis = redis
        self._settings_provider = settings_provider
        self._broadcaster = broadcaster or (RedisBroadcaster(redis) if redis is not None else None)
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._redis is not None and self._broadcaster is not None

    async def notify_visit_started(
        self,
        visit: PlaceVisitEvent,
        visit_settings: VisitSettings | None = None,
    ) -> bool:
        """Returns True when the event was published, False when suppressed."""
        if not self.enabled:
            return False

        visit_settings = visit_settings or await self._settings_provider.get()
        cooldown = visit_settings.notification_cooldown
        if cooldown is not None:
            claimed = await self._redis.set(
                _cooldown_key(visit), visit.id, nx=True, ex=max(1, int(cooldown.total_seconds()))
            )
            if not claimed:
                logger.debug(
                    "visit_started suppressed by cooldown: user=%s place=%s",
                    visit.user_id,
                    visit.place_id,
                )
                return False

        event = VisitStartedEvent.from_visit(visit)
        await self._broadcaster.broadcast(user_channel(visit.user_id), event.to_json())
        logger.info("visit_started sent: user=%s visit=%s", visit.user_id, visit.id)
        return True

    def dispatch(self, visit: PlaceVisitEvent, visit_settings: VisitSettings | None = None) -> None:
        """Fire-and-forget. Must be called outside the persisting transaction."""
        if not self.enabled:
            return
        task = asyncio.create_task(self._deliver(visit, visit_settings))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, visit: PlaceVisitEvent, visit_settings: VisitSettings | None) -> None:
        try:
            await self.notify_visit_started(visit, visit_settings)
        except Exception as exc:
            logger.warning(
                "visit_started delivery failed: user=%s visit=%s",
                visit.user_id,
                visit.id,
                exc_info=True,
            )
            report_exception(exc)
