"""Background worker for processing deferred jobs.

Provides a worker that:
- Claims due jobs from one named queue
- Dispatches each to the handler registered for its task
- Hands failures back to the queue's retry policy
- Supports graceful shutdown

Example:
    worker = JobWorker(jobs, WorkerConfig(queue="localhost:3000/"))
    register_all_handlers(worker, registry)

    # Run worker (blocks until shutdown)
    await worker.run()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Awaitable, Callable

from fragcache.jobs.queue import DEFAULT_QUEUE, InMemoryJobQueue, Job, JobQueue
from fragcache.observability.logging import LogContext

logger = logging.getLogger(__name__)

# Type alias for job handlers
JobHandler = Callable[[Job], Awaitable[dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Worker configuration."""

    name: str = "default"
    queue: str = DEFAULT_QUEUE

    # Job processing
    batch_size: int = 10
    poll_interval: float = 1.0


class JobWorker:
    """Background worker for processing deferred jobs."""

    def __init__(
        self,
        queue: JobQueue | None = None,
        config: WorkerConfig | None = None,
    ) -> None:
        self.queue = queue or InMemoryJobQueue()
        self.config = config or WorkerConfig()
        self._handlers: dict[str, JobHandler] = {}
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def handlers(self) -> dict[str, JobHandler]:
        return dict(self._handlers)

    def register_handler(self, task: str, handler: JobHandler) -> None:
        """Register a handler for a task type.

        Args:
            task: Task name (e.g., "send_requests")
            handler: Async function that processes the job
        """
        self._handlers[task] = handler
        logger.info(f"Registered handler for task: {task}")

    async def start(self) -> None:
        """Start the worker."""
        await self.queue.initialize()
        self._running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        logger.info(f"Worker started: {self.config.name} on queue {self.config.queue}")

    async def stop(self) -> None:
        """Stop the worker after the current batch."""
        logger.info(f"Stopping worker: {self.config.name}")
        self._running = False
        self._shutdown_event.set()

    def _signal_handler(self) -> None:
        logger.info("Received shutdown signal")
        asyncio.create_task(self.stop())

    async def run(self) -> None:
        """Run the worker until shutdown.

        Jobs of one queue are processed one at a time, in claim order.
        """
        await self.start()

        try:
            while self._running:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error claiming jobs: {e}")

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=self.config.poll_interval
                    )
                except TimeoutError:
                    continue
        finally:
            logger.info(f"Worker stopped: {self.config.name}")

    async def _process_job(self, job: Job) -> None:
        handler = self._handlers.get(job.task)

        if handler is None:
            logger.error(f"No handler for task: {job.task}")
            await self.queue.fail_job(job.id, f"Unknown task type: {job.task}", retry=False)
            return

        with LogContext(job_id=job.id):
            try:
                logger.info(f"Processing job: {job.id} ({job.task})")
                result = await handler(job)
                await self.queue.complete_job(job.id, result)
                logger.info(f"Job completed successfully: {job.id}")

            except Exception as e:
                logger.error(f"Job failed: {job.id} - {e}")
                await self.queue.fail_job(job.id, str(e), retry=True)

    async def run_once(self) -> int:
        """Process one batch of due jobs and return.

        Returns:
            Number of jobs processed
        """
        count = 0
        async for job in self.queue.claim_jobs(
            self.config.queue,
            batch_size=self.config.batch_size,
        ):
            await self._process_job(job)
            count += 1
        return count

    async def drain(self, max_batches: int = 100) -> int:
        """Process batches until no due job remains."""
        total = 0
        for _ in range(max_batches):
            processed = await self.run_once()
            if processed == 0:
                break
            total += processed
        return total

    async def __aenter__(self) -> "JobWorker":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


def job_handler(task: str) -> Callable[[JobHandler], JobHandler]:
    """Decorator to mark a function as a job handler.

    Example:
        @job_handler("send_requests")
        async def handle_send(job: Job) -> dict:
            ...
    """

    def decorator(func: JobHandler) -> JobHandler:
        func.__job_task__ = task  # type: ignore[attr-defined]
        return func

    return decorator
