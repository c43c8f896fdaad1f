"""Tests for the fragcache command line."""

from pathlib import Path

import pytest
import typer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from typer.testing import CliRunner

from fragcache.cache.store import MemoryCacheStore
from fragcache.cli import app, prune_cmd, send_cmd
from fragcache.cli.common import load_object
from fragcache.config import Settings
from fragcache.fragments.repository import FragmentRepository
from fragcache.jobs.queue import InMemoryJobQueue, JobStatus
from fragcache.persistence import db
from fragcache.persistence.db import create_engine
from fragcache.persistence.tables import Base
from fragcache.registry import Registry
from fragcache.requests.request import Request
from tests.support import build_app

runner = CliRunner()


class TestLoadObject:
    """module:attribute references."""

    def test_loads_attribute(self) -> None:
        assert load_object("tests.support:build_app") is build_app

    def test_requires_attribute(self) -> None:
        with pytest.raises(typer.BadParameter):
            load_object("tests.support")

    def test_missing_attribute(self) -> None:
        with pytest.raises(typer.BadParameter):
            load_object("tests.support:nothing_here")


class TestCommands:
    """Command wiring."""

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("worker", "prune", "send"):
            assert command in result.output

    def test_send_drains_booked_replays(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Booked jobs are cancelled and their requests sent in-process."""
        jobs = InMemoryJobQueue()
        asgi_app = build_app()

        async def fake_build_registry(modules: list[str], app_path: str | None = None) -> Registry:
            registry = Registry(
                settings=Settings(application_root_url="http://testserver/", remote_hosts=[]),
                jobs=jobs,
                app=asgi_app,
            )
            queue = registry.queues.get("signed_in")
            queue.add(Request("GET", "/one"))
            queue.add(Request("GET", "/two"))
            await queue.start(delay=60)
            return registry

        monkeypatch.setattr(send_cmd, "build_registry", fake_build_registry)

        result = runner.invoke(app, ["send"])

        assert result.exit_code == 0, result.output
        assert "Sent 2 request(s)" in result.output
        assert [hit["path"] for hit in asgi_app.state.hits] == ["/one", "/two"]
        assert [job.status for job in jobs.jobs()] == [JobStatus.CANCELLED]

    def test_prune_books_requests_of_surviving_ancestors(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        """A destroyed child's parent is re-primed through a booked replay."""
        jobs = InMemoryJobQueue()
        cache = MemoryCacheStore()
        engines: list[AsyncEngine] = []

        async def fake_build_registry(modules: list[str], app_path: str | None = None) -> Registry:
            engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'prune.db'}")
            engines.append(engine)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            registry = Registry(
                settings=Settings(
                    application_root_url="http://testserver/",
                    remote_hosts=[],
                    default_user_types=["signed_in"],
                ),
                cache=cache,
                jobs=jobs,
                session_factory=async_sessionmaker(
                    engine, class_=AsyncSession, expire_on_commit=False
                ),
            )
            async with registry.session_factory() as session:
                repo = FragmentRepository(session, registry)
                page = await repo.root(type="Page", record_id=1, user_type="signed_in")
                await repo.child(page, type="Section", key="gone")
                await session.commit()
            await cache.write(page.cache_key, "<main></main>")
            return registry

        async def dispose_engines() -> None:
            for engine in engines:
                await engine.dispose()

        monkeypatch.setattr(prune_cmd, "build_registry", fake_build_registry)
        monkeypatch.setattr(db, "close_db", dispose_engines)

        result = runner.invoke(app, ["prune"])

        assert result.exit_code == 0, result.output
        assert "Roots after:  1" in result.output
        assert "Requests booked for replay: 1" in result.output
        [job] = jobs.jobs()
        assert [item["path"] for item in job.payload["queue"]["requests"]] == ["/pages/1"]
