"""Record event bus.

Routes record lifecycle events to the Proxy of the record's class, which
fans them out to the subscribed fragment variants. Handlers run in the
publisher's task, one after another, so everything they touch lands in the
same repository session.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fragcache.events.schemas import RecordEvent, RecordEventType
from fragcache.events.subscriptions import Proxy

if TYPE_CHECKING:
    from fragcache.fragments.repository import FragmentRepository

logger = logging.getLogger(__name__)


class RecordEventBus:
    """One Proxy per record class, created on first use."""

    def __init__(self) -> None:
        self._proxies: dict[str, Proxy] = {}

    def proxy(self, publisher: str) -> Proxy:
        proxy = self._proxies.get(publisher)
        if proxy is None:
            proxy = Proxy(publisher)
            self._proxies[publisher] = proxy
        return proxy

    @property
    def publishers(self) -> list[str]:
        return list(self._proxies)

    async def publish(self, event: RecordEvent, repo: FragmentRepository) -> None:
        """Deliver an event to the subscriptions of its record class.

        Updates without attribute changes are dropped.
        """
        proxy = self._proxies.get(event.record_type)
        if proxy is None:
            return

        logger.debug(f"Publishing {event.event_type.value} for {event.record_type}")
        if event.event_type == RecordEventType.CREATED:
            await proxy.after_create(repo, event.record)
        elif event.event_type == RecordEventType.UPDATED:
            if event.changes:
                await proxy.after_update(repo, event.record)
        else:
            await proxy.after_destroy(repo, event.record)

    def clear(self) -> None:
        self._proxies.clear()
