"""Tests for request replay: immediate sends, scheduling and throttling."""

from datetime import timedelta

import pytest
from fastapi import FastAPI

from fragcache.errors import SignInError
from fragcache.jobs.queue import InMemoryJobQueue, JobStatus, utcnow
from fragcache.jobs.tasks import register_all_handlers, send_requests
from fragcache.jobs.worker import JobWorker, WorkerConfig
from fragcache.registry import Registry
from fragcache.requests.queue import RequestQueue
from fragcache.requests.request import Request
from fragcache.requests.sender import SEND_REQUESTS_TASK
from tests.support import build_app

R1 = Request("GET", "/one")
R2 = Request("GET", "/two")
R3 = Request("GET", "/three")


@pytest.fixture
def app(registry: Registry) -> FastAPI:
    registry.app = build_app()
    return registry.app


def hit_paths(app: FastAPI) -> list[str]:
    return [hit["path"] for hit in app.state.hits]


def queued_paths(data: dict) -> list[str]:
    return [item["path"] for item in data["queue"]["requests"]]


class TestImmediateSend:
    """start() without delay or between drains the queue now."""

    async def test_fifo_drain(self, registry: Registry, app: FastAPI) -> None:
        queue = registry.queues.get("signed_in")
        for request in (R1, R2, R3):
            queue.add(request)

        await queue.start()

        assert hit_paths(app) == ["/one", "/two", "/three"]
        assert queue.size == 0

    async def test_signs_in_as_session_user(self, registry: Registry, app: FastAPI) -> None:
        registry.session_users.register("signed_in", {"email": "member", "password": "secret"})
        queue = registry.queues.get("signed_in")
        queue.add(R1)

        await queue.start()

        assert [hit["user"] for hit in app.state.hits] == ["member"]

    async def test_failed_sign_in_leaves_queue(self, registry: Registry, app: FastAPI) -> None:
        """The failing request goes back to the head of the queue."""
        registry.session_users.register("signed_in", {"email": "member", "password": "wrong"})
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        queue.add(R2)

        with pytest.raises(SignInError):
            await queue.start()

        assert queue.requests == [R1, R2]
        assert app.state.hits == []

    async def test_empty_queue(self, registry: Registry) -> None:
        queue = registry.queues.get("signed_in")

        assert await queue.sender.send_all_requests() == 0


class TestScheduling:
    """start(delay=...) and start(between=...) book send_requests jobs."""

    async def test_delay_books_job_and_clears_queue(
        self, registry: Registry, jobs: InMemoryJobQueue
    ) -> None:
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        queue.add(R2)
        before = utcnow()

        await queue.start(delay=30)

        [job] = jobs.jobs()
        assert job.task == SEND_REQUESTS_TASK
        assert job.queue == registry.processing_key
        assert job.run_at >= before + timedelta(seconds=30)
        assert queued_paths(job.payload) == ["/one", "/two"]
        assert job.payload["delay"] == 30
        assert queue.size == 0

    async def test_empty_queue_books_nothing(
        self, registry: Registry, jobs: InMemoryJobQueue
    ) -> None:
        await registry.queues.get("signed_in").start(delay=5)

        assert jobs.jobs() == []

    async def test_rescheduling_replaces_pending_job(
        self, registry: Registry, jobs: InMemoryJobQueue
    ) -> None:
        """The earlier job is cancelled and its requests carried over, oldest first."""
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        await queue.start(delay=10)
        queue.add(R2)
        queue.add(R1)

        await queue.start(delay=10)

        first, second = jobs.jobs()
        assert first.status == JobStatus.CANCELLED
        assert second.status == JobStatus.PENDING
        assert queued_paths(second.payload) == ["/one", "/two"]

    async def test_claimed_job_is_not_replaced(
        self, registry: Registry, jobs: InMemoryJobQueue
    ) -> None:
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        await queue.start(delay=0)
        [job async for job in jobs.claim_jobs(registry.processing_key)]
        queue.add(R2)

        await queue.start(delay=0)

        first, second = jobs.jobs()
        assert first.status == JobStatus.RUNNING
        assert queued_paths(second.payload) == ["/two"]

    async def test_other_queues_are_left_alone(
        self, registry: Registry, jobs: InMemoryJobQueue
    ) -> None:
        signed_in = registry.queues.get("signed_in")
        signed_out = registry.queues.get("signed_out")
        signed_in.add(R1)
        signed_out.add(R2)

        await signed_in.start(delay=10)
        await signed_out.start(delay=10)

        assert [job.status for job in jobs.jobs()] == [JobStatus.PENDING, JobStatus.PENDING]


class TestDeferredReplay:
    """send_requests jobs replay their snapshot."""

    async def test_worker_replays_snapshot(
        self, registry: Registry, jobs: InMemoryJobQueue, app: FastAPI
    ) -> None:
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        queue.add(R2)
        await queue.start(delay=0)
        worker = JobWorker(jobs, WorkerConfig(queue=registry.processing_key))
        register_all_handlers(worker, registry)

        assert await worker.run_once() == 1

        [job] = jobs.jobs()
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"sent": 2, "remaining": 0}
        assert hit_paths(app) == ["/one", "/two"]

    async def test_throttled_replay_sends_one_and_rebooks(
        self, registry: Registry, jobs: InMemoryJobQueue, app: FastAPI
    ) -> None:
        queue = registry.queues.get("signed_in")
        for request in (R1, R2, R3):
            queue.add(request)
        await queue.start(between=5)

        [job] = [job async for job in jobs.claim_jobs(registry.processing_key)]
        result = await send_requests(job, registry)

        assert result == {"sent": 1, "remaining": 2}
        assert hit_paths(app) == ["/one"]
        rebooked = jobs.jobs(JobStatus.PENDING)
        assert len(rebooked) == 1
        assert queued_paths(rebooked[0].payload) == ["/two", "/three"]
        assert rebooked[0].run_at > utcnow() + timedelta(seconds=4)

        later = utcnow() + timedelta(seconds=10)
        [job] = [job async for job in jobs.claim_jobs(registry.processing_key, now=later)]
        await send_requests(job, registry)

        assert hit_paths(app) == ["/one", "/two"]

    async def test_rebooked_snapshot_keeps_older_requests_first(
        self, registry: Registry, jobs: InMemoryJobQueue, app: FastAPI
    ) -> None:
        """A throttled rebook absorbs newer pending work behind its own requests."""
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        queue.add(R2)
        await queue.start(between=5)
        [job] = [job async for job in jobs.claim_jobs(registry.processing_key)]
        queue.add(R3)
        await queue.start(delay=60)

        await send_requests(job, registry)

        [pending] = jobs.jobs(JobStatus.PENDING)
        assert queued_paths(pending.payload) == ["/two", "/three"]

    async def test_failed_replay_surfaces_to_worker(
        self, registry: Registry, jobs: InMemoryJobQueue, app: FastAPI
    ) -> None:
        registry.session_users.register("signed_in", {"email": "member", "password": "wrong"})
        queue = registry.queues.get("signed_in")
        queue.add(R1)
        await queue.start(delay=0)
        worker = JobWorker(jobs, WorkerConfig(queue=registry.processing_key))
        register_all_handlers(worker, registry)

        await worker.run_once()

        [job] = jobs.jobs()
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert "Sign in failed" in (job.error or "")

    async def test_snapshot_is_detached(self, registry: Registry) -> None:
        queue = registry.queues.get("signed_in")
        queue.add(R1)

        snapshot = RequestQueue.from_dict(queue.to_dict(), registry)

        assert snapshot.detached
        assert snapshot is not queue
        assert snapshot.sender.registry is registry
