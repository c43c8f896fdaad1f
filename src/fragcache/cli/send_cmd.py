"""CLI command for sending booked replays immediately.

Usage:
    fragcache send -m myapp.fragments --app myapp.main:app
"""

from __future__ import annotations

import asyncio

import typer

from fragcache.cli.common import APP_HELP, MODULES_HELP, build_registry

app = typer.Typer(help="Send every booked replay now")


@app.callback(invoke_without_command=True)
def send(
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
) -> None:
    """Cancel pending send_requests jobs and drain their queues synchronously."""
    sent = asyncio.run(_run(modules, app_path))
    typer.echo(f"Sent {sent} request(s)")


async def _run(modules: list[str], app_path: str | None) -> int:
    from fragcache.cache.store import close_redis
    from fragcache.persistence.db import close_db
    from fragcache.requests.queue import RequestQueue
    from fragcache.requests.sender import SEND_REQUESTS_TASK

    registry = await build_registry(modules, app_path)
    try:
        for job in await registry.jobs.find_jobs(SEND_REQUESTS_TASK, queue=registry.processing_key):
            if not await registry.jobs.cancel_job(job.id):
                continue
            snapshot = RequestQueue.from_dict(job.payload["queue"], registry)
            queue = registry.queues.get(snapshot.user_type, str(snapshot.target))
            for request in snapshot.requests:
                queue.add(request)

        sent = 0
        for queue in registry.queues.pending():
            typer.echo(f"Sending {queue.size} request(s) for {queue.user_type} to {queue.target}")
            sent += await queue.sender.send_all_requests()
        return sent
    finally:
        await registry.aclose()
        await close_db()
        await close_redis()
