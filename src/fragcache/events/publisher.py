"""Record lifecycle capture.

RecordPublisher watches an AsyncSession for inserts, updates and deletes of
registered record classes. Events are collected on every flush and held in
the session's ``info`` until the transaction commits; dispatch() then
publishes them on the bus with a repository bound to the same session.

Example:
    async with unit_of_work(registry) as session:
        session.add(Article(title="Hello"))
    # ArticlePage's create handler has run and its request is queued
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from fragcache.events.schemas import RecordEvent, RecordEventType
from fragcache.fragments.repository import FragmentRepository

if TYPE_CHECKING:
    from fragcache.registry import Registry

logger = logging.getLogger(__name__)

PENDING_KEY = "fragcache.pending_events"
ATTACHED_KEY = "fragcache.publisher"


def attribute_changes(record: Any) -> dict[str, tuple[Any, Any]]:
    """Column attributes changed on a record since it was loaded: name -> (old, new)."""
    changes: dict[str, tuple[Any, Any]] = {}
    for attr in inspect(record).attrs:
        history = attr.history
        if not history.has_changes():
            continue
        old = history.deleted[0] if history.deleted else None
        new = history.added[0] if history.added else None
        if old != new:
            changes[attr.key] = (old, new)
    return changes


class RecordPublisher:
    """Turns ORM flushes of registered record classes into RecordEvents."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def is_record(self, obj: Any) -> bool:
        return self.registry.record_types.get(type(obj).__name__) is type(obj)

    def attach(self, session: AsyncSession) -> None:
        """Start capturing events on a session."""
        sync_session = session.sync_session
        if sync_session.info.get(ATTACHED_KEY) is self:
            return
        event.listen(sync_session, "after_flush", self._after_flush)
        event.listen(sync_session, "after_rollback", self._after_rollback)
        sync_session.info[ATTACHED_KEY] = self

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        pending: list[RecordEvent] = session.info.setdefault(PENDING_KEY, [])
        created = [e.record for e in pending if e.event_type == RecordEventType.CREATED]

        for obj in session.new:
            if self.is_record(obj):
                pending.append(RecordEvent(RecordEventType.CREATED, obj))

        for obj in session.dirty:
            if not self.is_record(obj) or any(obj is record for record in created):
                continue
            changes = attribute_changes(obj)
            if changes:
                pending.append(RecordEvent(RecordEventType.UPDATED, obj, changes))

        for obj in session.deleted:
            if self.is_record(obj):
                pending.append(RecordEvent(RecordEventType.DESTROYED, obj))

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(PENDING_KEY, None)

    def pending(self, session: AsyncSession) -> list[RecordEvent]:
        return list(session.sync_session.info.get(PENDING_KEY, []))

    def discard(self, session: AsyncSession) -> None:
        session.sync_session.info.pop(PENDING_KEY, None)

    async def dispatch(self, session: AsyncSession, repo: FragmentRepository) -> int:
        """Publish captured events in the order they were flushed.

        Events raised while handlers run are published too. Returns the
        number of events published.
        """
        published = 0
        while True:
            events: list[RecordEvent] = session.sync_session.info.pop(PENDING_KEY, [])
            if not events:
                return published
            for record_event in events:
                await self.registry.bus.publish(record_event, repo)
                published += 1
            await session.flush()


@asynccontextmanager
async def unit_of_work(registry: Registry | None = None) -> AsyncIterator[AsyncSession]:
    """A transaction whose record events are published once it commits.

    Fragment changes made by the handlers are committed in a second
    transaction on the same session.
    """
    if registry is None:
        from fragcache.registry import get_registry

        registry = get_registry()

    session = registry.session_factory()
    registry.publisher.attach(session)
    try:
        yield session
        await session.commit()
        repo = FragmentRepository(session, registry)
        count = await registry.publisher.dispatch(session, repo)
        await session.commit()
        if count:
            logger.debug(f"Published {count} record event(s)")
    except Exception:
        await session.rollback()
        registry.publisher.discard(session)
        raise
    finally:
        await session.close()
