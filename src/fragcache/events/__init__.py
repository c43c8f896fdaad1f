"""Record event subscription bus for fragcache.

Provides:
- RecordEvent schemas for record lifecycle changes
- Subscriber/Subscription/Proxy fan-out from record classes to fragment variants
- RecordEventBus for publishing
- RecordPublisher and unit_of_work for capturing ORM changes
"""

from fragcache.events.bus import RecordEventBus
from fragcache.events.publisher import RecordPublisher, unit_of_work
from fragcache.events.schemas import RecordEvent, RecordEventType
from fragcache.events.subscriptions import (
    Proxy,
    RecordHandler,
    RecordHandlers,
    Subscriber,
    Subscription,
)

__all__ = [
    # Schemas
    "RecordEvent",
    "RecordEventType",
    # Subscriptions
    "RecordHandler",
    "RecordHandlers",
    "Subscription",
    "Subscriber",
    "Proxy",
    # Bus
    "RecordEventBus",
    "RecordPublisher",
    "unit_of_work",
]
