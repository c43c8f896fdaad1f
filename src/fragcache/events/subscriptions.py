"""Subscriptions of fragment variants to record lifecycle events.

Each fragment variant has one Subscriber, which owns one Subscription per
record class it listens to. Each record class has one Proxy on the bus that
fans its events out to every registered Subscription.

A Subscription holds an explicit RecordHandlers set; an event without a
handler is a no-op. Destroy events additionally run the subscription's
after_destroy callbacks once the variant's own handler has finished.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from fragcache.events.schemas import RecordEventType, record_type_of

if TYPE_CHECKING:
    from fragcache.events.bus import RecordEventBus
    from fragcache.fragments.model import Fragment
    from fragcache.fragments.repository import FragmentRepository

logger = logging.getLogger(__name__)

RecordHandler = Callable[["FragmentRepository", Any], Awaitable[None]]


@dataclass(frozen=True)
class RecordHandlers:
    """Handlers a variant registers for one record class."""

    on_create: RecordHandler | None = None
    on_update: RecordHandler | None = None
    on_destroy: RecordHandler | None = None

    def merge(self, other: RecordHandlers) -> RecordHandlers:
        """Combine two handler sets; handlers in ``other`` win."""
        return replace(
            self,
            on_create=other.on_create or self.on_create,
            on_update=other.on_update or self.on_update,
            on_destroy=other.on_destroy or self.on_destroy,
        )

    def for_event(self, event_type: RecordEventType) -> RecordHandler | None:
        if event_type == RecordEventType.CREATED:
            return self.on_create
        if event_type == RecordEventType.UPDATED:
            return self.on_update
        return self.on_destroy


class Subscription:
    """Binds one fragment variant to one record class."""

    def __init__(self, subscriber: Subscriber, publisher: str):
        self.subscriber = subscriber
        self.publisher = publisher
        self.handlers = RecordHandlers()
        self.after_destroy_callbacks: list[RecordHandler] = []

    @property
    def client(self) -> type[Fragment]:
        return self.subscriber.client

    def add_handlers(self, handlers: RecordHandlers) -> None:
        self.handlers = self.handlers.merge(handlers)

    def add_after_destroy(self, callback: RecordHandler) -> None:
        if callback not in self.after_destroy_callbacks:
            self.after_destroy_callbacks.append(callback)

    async def after_create(self, repo: FragmentRepository, record: Any) -> None:
        await self._call(RecordEventType.CREATED, repo, record)

    async def after_update(self, repo: FragmentRepository, record: Any) -> None:
        await self._call(RecordEventType.UPDATED, repo, record)

    async def after_destroy(self, repo: FragmentRepository, record: Any) -> None:
        await self._call(RecordEventType.DESTROYED, repo, record)
        for callback in self.after_destroy_callbacks:
            await callback(repo, record)

    async def _call(self, event_type: RecordEventType, repo: FragmentRepository, record: Any) -> None:
        handler = self.handlers.for_event(event_type)
        if handler is None:
            return

        description = (
            f"{event_type.value} handler on {self.client.__name__} "
            f"with record {record_type_of(record)} {getattr(record, 'id', None)}"
        )
        logger.info(f"Calling {description}")
        started = time.perf_counter()
        await handler(repo, record)
        logger.info(f"{description} took {(time.perf_counter() - started) * 1000:.1f}ms")

    def __repr__(self) -> str:
        return f"Subscription({self.client.__name__} -> {self.publisher})"


class Subscriber:
    """The subscriptions of one fragment variant."""

    def __init__(self, client: type[Fragment], bus: RecordEventBus):
        self.client = client
        self.bus = bus
        self.subscriptions: dict[str, Subscription] = {}

    def subscription(self, publisher: str) -> Subscription:
        """Get or create the subscription to a record class."""
        subscription = self.subscriptions.get(publisher)
        if subscription is None:
            subscription = Subscription(self, publisher)
            self.subscriptions[publisher] = subscription
            self.bus.proxy(publisher).register(subscription)
        return subscription

    def subscribe_to(self, publisher: str, handlers: RecordHandlers) -> Subscription:
        subscription = self.subscription(publisher)
        subscription.add_handlers(handlers)
        return subscription


class Proxy:
    """Fans one record class's events out to its subscriptions."""

    def __init__(self, publisher: str):
        self.publisher = publisher
        self._subscriptions: list[Subscription] = []

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def register(self, subscription: Subscription) -> None:
        if subscription not in self._subscriptions:
            self._subscriptions.append(subscription)

    async def after_create(self, repo: FragmentRepository, record: Any) -> None:
        for subscription in self.subscriptions:
            await subscription.after_create(repo, record)

    async def after_update(self, repo: FragmentRepository, record: Any) -> None:
        for subscription in self.subscriptions:
            await subscription.after_update(repo, record)

    async def after_destroy(self, repo: FragmentRepository, record: Any) -> None:
        for subscription in self.subscriptions:
            await subscription.after_destroy(repo, record)
