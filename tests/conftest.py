"""Global pytest configuration and fixtures.

Each test gets its own SQLite database file, an in-process cache store and
job queue, and a fresh Registry installed as the default.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fragcache.cache.store import MemoryCacheStore
from fragcache.config import Settings
from fragcache.fragments.model import Fragment  # noqa: F401  (registers the table)
from fragcache.fragments.repository import FragmentRepository
from fragcache.jobs.queue import InMemoryJobQueue
from fragcache.persistence.db import create_engine
from fragcache.persistence.tables import Base
from fragcache.registry import Registry, reset_registry, set_registry
from tests.support import Article, Comment, RecordBase


@pytest.fixture
def settings() -> Settings:
    """Settings for a single local instance without remote hosts."""
    return Settings(
        application_root_url="http://testserver/",
        remote_hosts=[],
        session_users={},
        default_user_types=["signed_in"],
        enable_metrics=False,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """SQLite engine with the fragment and record tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'fragcache.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(RecordBase.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def jobs() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def registry(
    settings: Settings,
    cache: MemoryCacheStore,
    jobs: InMemoryJobQueue,
    session_factory: async_sessionmaker[AsyncSession],
) -> Iterator[Registry]:
    """A Registry wired to the test collaborators and installed as the default."""
    registry = Registry(
        settings=settings,
        cache=cache,
        jobs=jobs,
        session_factory=session_factory,
    )
    registry.register_record_type(Article)
    registry.register_record_type(Comment)
    set_registry(registry)
    yield registry
    reset_registry()


@pytest.fixture
def repo(session: AsyncSession, registry: Registry) -> FragmentRepository:
    return FragmentRepository(session, registry)
