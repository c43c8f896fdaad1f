"""The fragcache registry.

One Registry holds everything that would otherwise be process-wide state:
settings, the cache store, the deferred job queue, the request queues, the
session users, the event bus with its subscribers, pending handlers and the
record classes fragments refer to. Components receive the registry
explicitly; get_registry() provides a lazily built default and
reset_registry() discards it.

Example:
    registry = Registry(cache=RedisCacheStore(await get_redis()), jobs=RedisJobQueue())
    registry.register_record_type(Article)
    registry.install_all()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fragcache.cache.store import CacheStore, MemoryCacheStore
from fragcache.config import Settings, settings as default_settings
from fragcache.events.bus import RecordEventBus
from fragcache.events.publisher import RecordPublisher
from fragcache.events.subscriptions import Subscriber
from fragcache.fragments.model import Fragment
from fragcache.handlers import HandlerList
from fragcache.jobs.queue import InMemoryJobQueue, JobQueue
from fragcache.requests.queue import RequestQueueRegistry
from fragcache.requests.session import AppInstance, SessionUserRegistry

logger = logging.getLogger(__name__)

UserTypeMapping = Callable[[Any], "str | None"]


def default_user_type(user: Any) -> str:
    return "signed_in" if user else "signed_out"


class Registry:
    """Explicit context for fragment caching."""

    def __init__(
        self,
        settings: Settings | None = None,
        cache: CacheStore | None = None,
        jobs: JobQueue | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        app: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
        default_user_type: UserTypeMapping = default_user_type,
    ):
        self.settings = settings or default_settings
        self.cache = cache or MemoryCacheStore()
        self.jobs = jobs or InMemoryJobQueue(max_retries=self.settings.job_max_retries)
        self._session_factory = session_factory
        # ASGI application driven by internal sessions
        self.app = app
        # Transport for external sessions; None uses the network
        self.transport = transport
        self.default_user_type = default_user_type

        self.queues = RequestQueueRegistry(self)
        self.session_users = SessionUserRegistry()
        self.bus = RecordEventBus()
        self.publisher = RecordPublisher(self)
        self.handlers = HandlerList()
        self.subscribers: dict[type[Fragment], Subscriber] = {}
        self.record_types: dict[str, type] = {}
        self._installed: set[type[Fragment]] = set()

        for user_type, credentials in self.settings.session_users.items():
            self.session_users.register(user_type, credentials)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from fragcache.persistence.db import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory

    @property
    def processing_key(self) -> str:
        """Job queue processed by this instance's workers."""
        local = AppInstance(self.settings.application_root_url)
        return local.queue_name + self.settings.job_queue_name_suffix

    def targets(self) -> list[str]:
        """This instance's application followed by every remote host."""
        local = str(AppInstance(self.settings.application_root_url))
        targets = [local]
        for host in self.settings.remote_hosts:
            url = str(AppInstance(host))
            if url not in targets:
                targets.append(url)
        return targets

    def register_record_type(self, model: type, name: str | None = None) -> type:
        """Make a record class resolvable by name and publish its lifecycle events."""
        self.record_types[name or model.__name__] = model
        return model

    def subscriber(self, cls: type[Fragment]) -> Subscriber:
        subscriber = self.subscribers.get(cls)
        if subscriber is None:
            subscriber = Subscriber(cls, self.bus)
            self.subscribers[cls] = subscriber
        return subscriber

    def install(self, *classes: type[Fragment]) -> None:
        """Wire the event subscriptions of fragment variants."""
        from fragcache.fragments.subscriptions import install

        for cls in classes:
            if cls in self._installed:
                continue
            install(self, cls)
            self._installed.add(cls)
            logger.debug(f"Installed fragment variant {cls.__name__}")

    def install_all(self) -> None:
        """Install every mapped fragment variant."""
        self.install(*Fragment.variants())

    async def aclose(self) -> None:
        await self.queues.aclose()


_registry: Registry | None = None


def get_registry() -> Registry:
    """Get or create the default registry."""
    global _registry
    if _registry is None:
        _registry = Registry()
    return _registry


def set_registry(registry: Registry) -> Registry:
    global _registry
    _registry = registry
    return registry


def reset_registry() -> None:
    """Discard the default registry."""
    global _registry
    _registry = None
