"""visit_started notifications: payload, Redis transport, cooldown-aware dispatcher."""

from services.visits.notify.dispatcher import NotificationDispatcher
from services.visits.notify.events import VisitStartedEvent, user_channel
from services.visits.notify.transport import Broadcaster, RedisBroadcaster, create_redis_client

__all__ = [
    "Broadcaster",
    "NotificationDispatcher",
    "RedisBroadcaster",
    "VisitStartedEvent",
    "create_redis_client",
    "user_channel",
]
