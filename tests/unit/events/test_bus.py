"""Tests for the record event bus."""

from unittest.mock import AsyncMock

import pytest

from fragcache.events.bus import RecordEventBus
from fragcache.events.schemas import RecordEvent, RecordEventType
from fragcache.events.subscriptions import RecordHandlers, Subscriber
from tests.support import Article, Comment, Page


class TestRecordEventBus:
    """Routing of events to the proxy of their record class."""

    @pytest.fixture
    def bus(self) -> RecordEventBus:
        """Create a fresh event bus."""
        return RecordEventBus()

    @pytest.fixture
    def handlers(self, bus: RecordEventBus) -> RecordHandlers:
        handlers = RecordHandlers(on_create=AsyncMock(), on_update=AsyncMock(), on_destroy=AsyncMock())
        Subscriber(Page, bus).subscribe_to("Article", handlers)
        return handlers

    def test_proxy_created_once(self, bus: RecordEventBus) -> None:
        assert bus.proxy("Article") is bus.proxy("Article")

    async def test_publish_create(self, bus: RecordEventBus, handlers: RecordHandlers) -> None:
        repo, record = AsyncMock(), Article(id=1)

        await bus.publish(RecordEvent(RecordEventType.CREATED, record), repo)

        handlers.on_create.assert_awaited_once_with(repo, record)  # type: ignore[union-attr]

    async def test_publish_update_with_changes(
        self, bus: RecordEventBus, handlers: RecordHandlers
    ) -> None:
        event = RecordEvent(RecordEventType.UPDATED, Article(id=1), {"title": ("a", "b")})

        await bus.publish(event, AsyncMock())

        handlers.on_update.assert_awaited_once()  # type: ignore[union-attr]

    async def test_update_without_changes_is_dropped(
        self, bus: RecordEventBus, handlers: RecordHandlers
    ) -> None:
        await bus.publish(RecordEvent(RecordEventType.UPDATED, Article(id=1)), AsyncMock())

        handlers.on_update.assert_not_awaited()  # type: ignore[union-attr]

    async def test_publish_destroy(self, bus: RecordEventBus, handlers: RecordHandlers) -> None:
        await bus.publish(RecordEvent(RecordEventType.DESTROYED, Article(id=1)), AsyncMock())

        handlers.on_destroy.assert_awaited_once()  # type: ignore[union-attr]

    async def test_unsubscribed_record_class_is_ignored(
        self, bus: RecordEventBus, handlers: RecordHandlers
    ) -> None:
        await bus.publish(RecordEvent(RecordEventType.CREATED, Comment(id=1)), AsyncMock())

        handlers.on_create.assert_not_awaited()  # type: ignore[union-attr]
        assert "Comment" not in bus.publishers

    def test_clear(self, bus: RecordEventBus) -> None:
        bus.proxy("Article")

        bus.clear()

        assert bus.publishers == []
