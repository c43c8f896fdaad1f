"""Deferred job queue for request replay and handler dispatch.

Provides a job queue with:
- Named queues, so each application instance processes its own jobs
- Delayed execution (run_at) and priorities
- Lookup and cancellation of pending jobs by task, used to replace
  previously scheduled replays
- Retry with a dead letter queue for jobs that keep failing

Two backends share the JobQueue interface:
- RedisJobQueue: distributed, Redis-backed
- InMemoryJobQueue: single process, used in tests

Example:
    jobs = RedisJobQueue()
    await jobs.initialize()

    job_id = await jobs.submit(
        "send_requests",
        {"queue": snapshot},
        queue="localhost:3000/",
        run_at=datetime.now(timezone.utc) + timedelta(seconds=30),
    )

    async for job in jobs.claim_jobs("localhost:3000/"):
        ...
        await jobs.complete_job(job.id)
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, TypeVar, cast
from uuid import uuid4

import orjson

from fragcache.cache.store import get_redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

T = TypeVar("T")


def _await_redis(result: Awaitable[T] | T) -> Awaitable[T]:
    """Cast redis-py async results to an awaitable for mypy."""
    return cast(Awaitable[T], result)


logger = logging.getLogger(__name__)

# Redis key prefixes
JOB_PREFIX = "fragcache:job:"
QUEUE_SCHEDULED = "fragcache:jobs:scheduled:"
QUEUE_PENDING = "fragcache:jobs:pending:"
QUEUE_PROCESSING = "fragcache:jobs:processing:"
QUEUE_DLQ = "fragcache:jobs:dlq"

# Default configuration
DEFAULT_QUEUE = "default"
DEFAULT_JOB_TTL = 86400 * 7  # 7 days
DEFAULT_RESULT_TTL = 86400  # 24 hours
DEFAULT_MAX_RETRIES = 3

JobMatcher = Callable[["Job"], bool]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEAD = "dead"  # Moved to DLQ after max retries


@dataclass
class Job:
    """Job definition with metadata and state."""

    id: str
    task: str
    payload: dict[str, Any]
    queue: str = DEFAULT_QUEUE
    status: JobStatus = JobStatus.PENDING
    run_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    priority: int = 0  # Higher = more urgent

    def to_dict(self) -> dict[str, Any]:
        """Serialize job to dictionary."""
        return {
            "id": self.id,
            "task": self.task,
            "payload": self.payload,
            "queue": self.queue,
            "status": self.status.value,
            "run_at": self.run_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """Deserialize job from dictionary."""
        return cls(
            id=data["id"],
            task=data["task"],
            payload=data["payload"],
            queue=data.get("queue", DEFAULT_QUEUE),
            status=JobStatus(data["status"]),
            run_at=datetime.fromisoformat(data["run_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=(
                datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None
            ),
            completed_at=(
                datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None
            ),
            result=data.get("result"),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
            max_retries=data.get("max_retries", DEFAULT_MAX_RETRIES),
            priority=data.get("priority", 0),
        )

    @property
    def is_due(self) -> bool:
        return self.run_at <= utcnow()


class JobQueue(ABC):
    """Interface of the deferred-job facility."""

    max_retries: int = DEFAULT_MAX_RETRIES

    async def initialize(self) -> None:
        """Prepare backend connections."""

    @abstractmethod
    async def submit(
        self,
        task: str,
        payload: dict[str, Any] | None = None,
        *,
        queue: str = DEFAULT_QUEUE,
        run_at: datetime | None = None,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> str:
        """Submit a job; returns its id."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """Get job by id."""

    @abstractmethod
    async def find_jobs(
        self,
        task: str,
        queue: str | None = None,
        match: JobMatcher | None = None,
    ) -> list[Job]:
        """Pending (not yet claimed) jobs for a task, optionally filtered."""

    @abstractmethod
    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending job. Returns False if it is not pending."""

    @abstractmethod
    def claim_jobs(
        self,
        queue: str = DEFAULT_QUEUE,
        batch_size: int = 1,
        now: datetime | None = None,
    ) -> AsyncIterator[Job]:
        """Claim due jobs from a queue for processing."""

    @abstractmethod
    async def complete_job(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        """Mark job as completed."""

    @abstractmethod
    async def fail_job(self, job_id: str, error: str, retry: bool = True) -> None:
        """Mark job as failed, optionally retry."""

    def _new_job(
        self,
        task: str,
        payload: dict[str, Any] | None,
        queue: str,
        run_at: datetime | None,
        priority: int,
        max_retries: int | None,
    ) -> Job:
        return Job(
            id=str(uuid4()),
            task=task,
            payload=payload or {},
            queue=queue,
            run_at=run_at or utcnow(),
            priority=priority,
            max_retries=max_retries if max_retries is not None else self.max_retries,
        )


class RedisJobQueue(JobQueue):
    """Redis-backed distributed job queue.

    Uses, per named queue:
    - a sorted set of scheduled job ids scored by run_at
    - a pending list that due jobs are promoted into
    - a processing list that claimed jobs move to atomically
    Job state is stored in separate keys.
    """

    def __init__(
        self,
        job_ttl: int = DEFAULT_JOB_TTL,
        result_ttl: int = DEFAULT_RESULT_TTL,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.job_ttl = job_ttl
        self.result_ttl = result_ttl
        self.max_retries = max_retries
        self._redis: Redis | None = None

    async def initialize(self) -> None:
        """Initialize Redis connection."""
        if self._redis is None:
            self._redis = await get_redis()
            logger.info("Job queue initialized")

    async def _get_redis(self) -> Redis:
        if self._redis is None:
            await self.initialize()
        return self._redis  # type: ignore[return-value]

    def _job_key(self, job_id: str) -> str:
        return f"{JOB_PREFIX}{job_id}"

    async def _save(self, redis: Redis, job: Job, ttl: int) -> None:
        await _await_redis(redis.set(self._job_key(job.id), orjson.dumps(job.to_dict()), ex=ttl))

    async def submit(
        self,
        task: str,
        payload: dict[str, Any] | None = None,
        *,
        queue: str = DEFAULT_QUEUE,
        run_at: datetime | None = None,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> str:
        redis = await self._get_redis()
        job = self._new_job(task, payload, queue, run_at, priority, max_retries)

        await self._save(redis, job, self.job_ttl)
        await _await_redis(
            redis.zadd(QUEUE_SCHEDULED + queue, {job.id: job.run_at.timestamp()})
        )

        logger.info(f"Job submitted: {job.id} ({task}) on {queue} at {job.run_at.isoformat()}")
        return job.id

    async def get_job(self, job_id: str) -> Job | None:
        redis = await self._get_redis()
        data = await redis.get(self._job_key(job_id))

        if data is None:
            return None

        return Job.from_dict(orjson.loads(data))

    async def _queue_ids(self, redis: Redis, queue: str) -> list[str]:
        scheduled = await _await_redis(redis.zrange(QUEUE_SCHEDULED + queue, 0, -1))
        pending = await _await_redis(redis.lrange(QUEUE_PENDING + queue, 0, -1))
        return [
            job_id.decode() if isinstance(job_id, bytes) else job_id
            for job_id in [*scheduled, *pending]
        ]

    async def find_jobs(
        self,
        task: str,
        queue: str | None = None,
        match: JobMatcher | None = None,
    ) -> list[Job]:
        redis = await self._get_redis()

        if queue is None:
            queues = []
            async for key in redis.scan_iter(match=QUEUE_SCHEDULED + "*"):
                name = key.decode() if isinstance(key, bytes) else key
                queues.append(name[len(QUEUE_SCHEDULED):])
        else:
            queues = [queue]

        jobs: list[Job] = []
        for name in queues:
            for job_id in await self._queue_ids(redis, name):
                job = await self.get_job(job_id)
                if job is None or job.task != task or job.status != JobStatus.PENDING:
                    continue
                if match is None or match(job):
                    jobs.append(job)
        return jobs

    async def cancel_job(self, job_id: str) -> bool:
        redis = await self._get_redis()
        job = await self.get_job(job_id)

        if job is None or job.status != JobStatus.PENDING:
            return False

        await _await_redis(redis.zrem(QUEUE_SCHEDULED + job.queue, job_id))
        await _await_redis(redis.lrem(QUEUE_PENDING + job.queue, 1, job_id))

        job.status = JobStatus.CANCELLED
        job.completed_at = utcnow()
        await self._save(redis, job, self.result_ttl)

        logger.info(f"Job cancelled: {job_id}")
        return True

    async def _promote_due(self, redis: Redis, queue: str, now: datetime) -> None:
        """Move scheduled jobs whose run_at has passed onto the pending list."""
        due = await _await_redis(
            redis.zrangebyscore(QUEUE_SCHEDULED + queue, 0, now.timestamp())
        )
        for raw_id in due:
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            # Only the instance that wins the ZREM promotes the job
            if not await _await_redis(redis.zrem(QUEUE_SCHEDULED + queue, job_id)):
                continue
            job = await self.get_job(job_id)
            if job is not None and job.priority > 0:
                await _await_redis(redis.rpush(QUEUE_PENDING + queue, job_id))
            else:
                await _await_redis(redis.lpush(QUEUE_PENDING + queue, job_id))

    async def claim_jobs(
        self,
        queue: str = DEFAULT_QUEUE,
        batch_size: int = 1,
        now: datetime | None = None,
    ) -> AsyncIterator[Job]:
        redis = await self._get_redis()
        await self._promote_due(redis, queue, now or utcnow())

        for _ in range(batch_size):
            # Atomic pop from pending, push to processing
            raw_id = await _await_redis(
                redis.rpoplpush(QUEUE_PENDING + queue, QUEUE_PROCESSING + queue)
            )
            if raw_id is None:
                break

            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            job = await self.get_job(job_id)

            if job is None:
                # Job expired or deleted, remove from processing
                await _await_redis(redis.lrem(QUEUE_PROCESSING + queue, 1, job_id))
                continue

            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
            job.attempts += 1
            await self._save(redis, job, self.job_ttl)

            logger.info(f"Job claimed: {job.id} (attempt {job.attempts})")
            yield job

    async def complete_job(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        redis = await self._get_redis()
        job = await self.get_job(job_id)

        if job is None:
            logger.warning(f"Job not found for completion: {job_id}")
            return

        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        job.result = result

        await self._save(redis, job, self.result_ttl)
        await _await_redis(redis.lrem(QUEUE_PROCESSING + job.queue, 1, job_id))

        logger.info(f"Job completed: {job_id}")

    async def fail_job(self, job_id: str, error: str, retry: bool = True) -> None:
        redis = await self._get_redis()
        job = await self.get_job(job_id)

        if job is None:
            logger.warning(f"Job not found for failure: {job_id}")
            return

        job.error = error
        await _await_redis(redis.lrem(QUEUE_PROCESSING + job.queue, 1, job_id))

        if retry and job.attempts < job.max_retries:
            job.status = JobStatus.PENDING
            await self._save(redis, job, self.job_ttl)
            await _await_redis(redis.lpush(QUEUE_PENDING + job.queue, job_id))
            logger.info(
                f"Job queued for retry: {job_id} (attempt {job.attempts}/{job.max_retries})"
            )
        else:
            job.status = JobStatus.DEAD
            job.completed_at = utcnow()
            await self._save(redis, job, self.job_ttl)
            await _await_redis(redis.lpush(QUEUE_DLQ, job_id))
            logger.warning(f"Job moved to DLQ: {job_id}")

    async def get_queue_stats(self, queue: str = DEFAULT_QUEUE) -> dict[str, int]:
        """Scheduled, pending, processing and dlq counts."""
        redis = await self._get_redis()

        return {
            "scheduled": await _await_redis(redis.zcard(QUEUE_SCHEDULED + queue)),
            "pending": await _await_redis(redis.llen(QUEUE_PENDING + queue)),
            "processing": await _await_redis(redis.llen(QUEUE_PROCESSING + queue)),
            "dlq": await _await_redis(redis.llen(QUEUE_DLQ)),
        }


class InMemoryJobQueue(JobQueue):
    """In-process job queue.

    Jobs run when claimed at or after their run_at. Suitable for tests and
    single-process deployments; nothing survives a restart.
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.max_retries = max_retries
        self._jobs: dict[str, Job] = {}
        self._order: dict[str, int] = {}
        self._counter = itertools.count()

    async def submit(
        self,
        task: str,
        payload: dict[str, Any] | None = None,
        *,
        queue: str = DEFAULT_QUEUE,
        run_at: datetime | None = None,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> str:
        job = self._new_job(task, payload, queue, run_at, priority, max_retries)
        # Payloads cross a serialization boundary in every real backend
        job.payload = orjson.loads(orjson.dumps(job.payload))
        self._jobs[job.id] = job
        self._order[job.id] = next(self._counter)
        logger.info(f"Job submitted: {job.id} ({task}) on {queue} at {job.run_at.isoformat()}")
        return job.id

    async def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def jobs(self, status: JobStatus | None = None) -> list[Job]:
        """All known jobs in submission order, optionally filtered by status."""
        jobs = sorted(self._jobs.values(), key=lambda job: self._order[job.id])
        return [job for job in jobs if status is None or job.status == status]

    async def find_jobs(
        self,
        task: str,
        queue: str | None = None,
        match: JobMatcher | None = None,
    ) -> list[Job]:
        return [
            job
            for job in self.jobs(JobStatus.PENDING)
            if job.task == task
            and (queue is None or job.queue == queue)
            and (match is None or match(job))
        ]

    async def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        job.status = JobStatus.CANCELLED
        job.completed_at = utcnow()
        logger.info(f"Job cancelled: {job_id}")
        return True

    async def claim_jobs(
        self,
        queue: str = DEFAULT_QUEUE,
        batch_size: int = 1,
        now: datetime | None = None,
    ) -> AsyncIterator[Job]:
        now = now or utcnow()
        due = [
            job
            for job in self.jobs(JobStatus.PENDING)
            if job.queue == queue and job.run_at <= now
        ]
        due.sort(key=lambda job: (-job.priority, job.run_at, self._order[job.id]))

        for job in due[:batch_size]:
            if job.status != JobStatus.PENDING:
                continue
            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
            job.attempts += 1
            logger.info(f"Job claimed: {job.id} (attempt {job.attempts})")
            yield job

    async def complete_job(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning(f"Job not found for completion: {job_id}")
            return
        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        job.result = result
        logger.info(f"Job completed: {job_id}")

    async def fail_job(self, job_id: str, error: str, retry: bool = True) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning(f"Job not found for failure: {job_id}")
            return

        job.error = error
        if retry and job.attempts < job.max_retries:
            job.status = JobStatus.PENDING
            logger.info(
                f"Job queued for retry: {job_id} (attempt {job.attempts}/{job.max_retries})"
            )
        else:
            job.status = JobStatus.DEAD
            job.completed_at = utcnow()
            logger.warning(f"Job moved to DLQ: {job_id}")
