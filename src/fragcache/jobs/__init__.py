"""Deferred job processing for fragcache.

Provides a job queue with:
- Named queues, one per application instance
- Delayed execution and priorities
- Lookup and cancellation of pending jobs
- Retry with a dead letter queue

Example:
    from fragcache.jobs import JobWorker, WorkerConfig, register_all_handlers

    worker = JobWorker(registry.jobs, WorkerConfig(queue=registry.processing_key))
    register_all_handlers(worker, registry)
    await worker.run()
"""

from fragcache.jobs.queue import (
    DEFAULT_JOB_TTL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RESULT_TTL,
    InMemoryJobQueue,
    Job,
    JobQueue,
    JobStatus,
    RedisJobQueue,
)
from fragcache.jobs.worker import JobHandler, JobWorker, WorkerConfig, job_handler

__all__ = [
    # Queue
    "Job",
    "JobQueue",
    "JobStatus",
    "RedisJobQueue",
    "InMemoryJobQueue",
    "DEFAULT_JOB_TTL",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RESULT_TTL",
    # Worker
    "JobHandler",
    "JobWorker",
    "WorkerConfig",
    "job_handler",
]
