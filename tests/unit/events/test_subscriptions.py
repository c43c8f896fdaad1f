"""Tests for subscriptions, subscribers and proxies."""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from fragcache.events.bus import RecordEventBus
from fragcache.events.schemas import RecordEvent, RecordEventType
from fragcache.events.subscriptions import Proxy, RecordHandlers, Subscriber, Subscription
from tests.support import Article, Page, Section


class TestRecordEvent:
    """Tests for the event value object."""

    def test_record_type(self) -> None:
        event = RecordEvent(RecordEventType.CREATED, Article(id=1))

        assert event.record_type == "Article"
        assert event.changes == {}
        assert event.event_id

    def test_event_type_from_string(self) -> None:
        assert RecordEventType("updated") == RecordEventType.UPDATED


class TestRecordHandlers:
    """Handler sets are explicit per event."""

    def test_for_event(self) -> None:
        on_create = AsyncMock()
        handlers = RecordHandlers(on_create=on_create)

        assert handlers.for_event(RecordEventType.CREATED) is on_create
        assert handlers.for_event(RecordEventType.UPDATED) is None
        assert handlers.for_event(RecordEventType.DESTROYED) is None

    def test_merge_prefers_other(self) -> None:
        first, second, update = AsyncMock(), AsyncMock(), AsyncMock()

        merged = RecordHandlers(on_create=first).merge(
            RecordHandlers(on_create=second, on_update=update)
        )

        assert merged.on_create is second
        assert merged.on_update is update
        assert merged.on_destroy is None


class TestSubscription:
    """A subscription calls its handlers and destroy callbacks."""

    @pytest.fixture
    def bus(self) -> RecordEventBus:
        return RecordEventBus()

    async def test_missing_handler_is_noop(self, bus: RecordEventBus) -> None:
        subscription = Subscriber(Section, bus).subscription("Article")

        await subscription.after_create(AsyncMock(), Article(id=1))
        await subscription.after_update(AsyncMock(), Article(id=1))

    async def test_handler_receives_repo_and_record(self, bus: RecordEventBus) -> None:
        handler = AsyncMock()
        subscription = Subscriber(Page, bus).subscribe_to(
            "Article", RecordHandlers(on_update=handler)
        )
        repo, record = AsyncMock(), Article(id=3)

        await subscription.after_update(repo, record)

        handler.assert_awaited_once_with(repo, record)

    async def test_after_destroy_callbacks_run_after_handler(self, bus: RecordEventBus) -> None:
        calls: list[str] = []

        async def handler(repo: Any, record: Any) -> None:
            calls.append("handler")

        async def callback(repo: Any, record: Any) -> None:
            calls.append("callback")

        subscription = Subscriber(Page, bus).subscribe_to(
            "Article", RecordHandlers(on_destroy=handler)
        )
        subscription.add_after_destroy(callback)
        subscription.add_after_destroy(callback)

        await subscription.after_destroy(AsyncMock(), Article(id=1))

        assert calls == ["handler", "callback"]

    async def test_callbacks_run_without_handler(self, bus: RecordEventBus) -> None:
        callback = AsyncMock()
        subscription = Subscriber(Page, bus).subscription("Article")
        subscription.add_after_destroy(callback)

        await subscription.after_destroy(AsyncMock(), Article(id=1))

        callback.assert_awaited_once()

    async def test_handler_errors_propagate(self, bus: RecordEventBus) -> None:
        subscription: Subscription = Subscriber(Page, bus).subscribe_to(
            "Article", RecordHandlers(on_create=AsyncMock(side_effect=RuntimeError("boom")))
        )

        with pytest.raises(RuntimeError, match="boom"):
            await subscription.after_create(AsyncMock(), Article(id=1))


class TestSubscriber:
    """One subscriber per variant, one subscription per record class."""

    def test_subscription_registers_with_proxy_once(self) -> None:
        bus = RecordEventBus()
        subscriber = Subscriber(Page, bus)

        first = subscriber.subscription("Article")
        second = subscriber.subscription("Article")

        assert first is second
        assert bus.proxy("Article").subscriptions == [first]
        assert bus.publishers == ["Article"]

    def test_subscribe_to_merges_handlers(self) -> None:
        subscriber = Subscriber(Page, RecordEventBus())
        on_create, on_destroy = AsyncMock(), AsyncMock()

        subscriber.subscribe_to("Article", RecordHandlers(on_create=on_create))
        subscription = subscriber.subscribe_to("Article", RecordHandlers(on_destroy=on_destroy))

        assert subscription.handlers == RecordHandlers(on_create=on_create, on_destroy=on_destroy)


class TestProxy:
    """Proxies fan events out to every subscription."""

    async def test_fan_out(self) -> None:
        bus = RecordEventBus()
        page_handler, section_handler = AsyncMock(), AsyncMock()
        Subscriber(Page, bus).subscribe_to("Article", RecordHandlers(on_create=page_handler))
        Subscriber(Section, bus).subscribe_to("Article", RecordHandlers(on_create=section_handler))
        record = Article(id=1)

        await bus.proxy("Article").after_create(AsyncMock(), record)

        page_handler.assert_awaited_once()
        section_handler.assert_awaited_once()

    def test_register_is_idempotent(self) -> None:
        proxy = Proxy("Article")
        subscription = Subscriber(Page, RecordEventBus()).subscription("Article")

        proxy.register(subscription)
        proxy.register(subscription)

        assert proxy.subscriptions == [subscription]
