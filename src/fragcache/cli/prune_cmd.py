"""CLI command for pruning the fragment tree against the cache store.

Usage:
    fragcache prune -m myapp.fragments
"""

from __future__ import annotations

import asyncio

import typer

from fragcache.cli.common import MODULES_HELP, build_registry

app = typer.Typer(help="Prune fragments whose cache entries are gone")


@app.callback(invoke_without_command=True)
def prune(
    modules: list[str] = typer.Option(
        [],
        "--module",
        "-m",
        help=MODULES_HELP,
    ),
) -> None:
    """Run touch_or_destroy on every root fragment.

    Fragments without a cache entry are destroyed with their subtrees and
    the rest are touched without queueing requests. Ancestors of destroyed
    fragments queue their requests, which are booked for replay by this
    instance's worker.
    """
    before, after, booked = asyncio.run(_run(modules))
    typer.echo(f"Roots before: {before}")
    typer.echo(f"Roots after:  {after}")
    typer.echo(f"Requests booked for replay: {booked}")


async def _run(modules: list[str]) -> tuple[int, int, int]:
    from fragcache.cache.store import close_redis
    from fragcache.fragments.repository import FragmentRepository
    from fragcache.persistence.db import close_db

    registry = await build_registry(modules)
    try:
        async with registry.session_factory() as session:
            repo = FragmentRepository(session, registry)
            roots = await repo.roots()
            for root in roots:
                await repo.touch_or_destroy(root)
            await session.commit()
            remaining = await repo.roots()

        booked = 0
        for queue in registry.queues.pending():
            booked += queue.size
            await queue.start(delay=0)
        return len(roots), len(remaining), booked
    finally:
        await close_db()
        await close_redis()
