"""Job handlers for request replay and handler dispatch.

- send_requests: replays a queue snapshot booked by a Sender; a throttled
  replay sends one request and books the rest again
- dispatch_handlers: runs a batch of deferred Handlers in one transaction,
  then sends everything they queued
"""

from __future__ import annotations

import logging
from typing import Any

from fragcache.fragments.repository import FragmentRepository
from fragcache.handlers import DISPATCH_HANDLERS_TASK, Dispatcher, Handler
from fragcache.jobs.queue import Job
from fragcache.jobs.worker import JobHandler, JobWorker
from fragcache.registry import Registry
from fragcache.requests.queue import RequestQueue
from fragcache.requests.sender import SEND_REQUESTS_TASK

logger = logging.getLogger(__name__)


async def send_requests(job: Job, registry: Registry) -> dict[str, Any]:
    """Replay the queue snapshot carried by a job."""
    queue = RequestQueue.from_dict(job.payload["queue"], registry)
    between = job.payload.get("between")
    sent = await queue.sender.perform(between=between)
    return {"sent": sent, "remaining": queue.size}


async def dispatch_handlers(job: Job, registry: Registry) -> dict[str, Any]:
    """Run a batch of deferred handlers and start all request queues."""
    tasks = [Handler.from_dict(data) for data in job.payload.get("tasks", [])]
    async with registry.session_factory() as session:
        repo = FragmentRepository(session, registry)
        try:
            await Dispatcher(tasks, registry).perform(repo)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return {"dispatched": len(tasks)}


def _bind(handler: Any, registry: Registry) -> JobHandler:
    async def run(job: Job) -> dict[str, Any] | None:
        return await handler(job, registry)

    return run


def register_all_handlers(worker: JobWorker, registry: Registry) -> None:
    """Register the replay and dispatch handlers on a worker."""
    worker.register_handler(SEND_REQUESTS_TASK, _bind(send_requests, registry))
    worker.register_handler(DISPATCH_HANDLERS_TASK, _bind(dispatch_handlers, registry))
