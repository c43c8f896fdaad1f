"""CLI command for running the replay worker.

Usage:
    fragcache worker -m myapp.fragments --app myapp.main:app
    fragcache worker -m myapp.fragments --batch-size 5 --poll-interval 0.5
"""

from __future__ import annotations

import asyncio

import typer

from fragcache.cli.common import APP_HELP, MODULES_HELP, build_registry

app = typer.Typer(help="Run the replay and dispatch worker")


@app.callback(invoke_without_command=True)
def worker(
    modules: list[str] = typer.Option(
        [],
        "--module",
        "-m",
        help=MODULES_HELP,
    ),
    app_path: str | None = typer.Option(
        None,
        "--app",
        "-a",
        help=APP_HELP,
    ),
    batch_size: int = typer.Option(
        10,
        "--batch-size",
        "-b",
        help="Jobs claimed per poll",
    ),
    poll_interval: float = typer.Option(
        1.0,
        "--poll-interval",
        "-p",
        help="Seconds between polls",
    ),
) -> None:
    """Process send_requests and dispatch_handlers jobs for this instance.

    The worker listens on the job queue named after the application root
    URL, so every instance replays its own queues.
    """
    asyncio.run(_run(modules, app_path, batch_size, poll_interval))


async def _run(modules: list[str], app_path: str | None, batch_size: int, poll_interval: float) -> None:
    from fragcache.cache.store import close_redis
    from fragcache.jobs.tasks import register_all_handlers
    from fragcache.jobs.worker import JobWorker, WorkerConfig
    from fragcache.persistence.db import close_db

    registry = await build_registry(modules, app_path)
    job_worker = JobWorker(
        registry.jobs,
        WorkerConfig(
            name=f"fragcache-{registry.processing_key}",
            queue=registry.processing_key,
            batch_size=batch_size,
            poll_interval=poll_interval,
        ),
    )
    register_all_handlers(job_worker, registry)

    typer.echo(f"Worker listening on {registry.processing_key}")
    try:
        await job_worker.run()
    finally:
        await registry.aclose()
        await close_db()
        await close_redis()
