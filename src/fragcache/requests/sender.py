"""Request replay.

A Sender drains one RequestQueue through an authenticated session, either
immediately or through a deferred ``send_requests`` job:

- start() with neither delay nor between sends everything now, FIFO
- start(delay=...) books one job that replays the whole queue later
- start(between=...) books a job that replays one request and re-books
  itself after ``between`` seconds while requests remain

Booking a job captures a snapshot of the queue, so the live queue is cleared
afterwards. A job booked earlier for the same queue and not yet claimed is
cancelled and its requests are carried into the new snapshot.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx

from fragcache.jobs.queue import Job, utcnow
from fragcache.observability.logging import LogContext
from fragcache.observability.metrics import get_metrics
from fragcache.requests.request import Request
from fragcache.requests.session import SessionUser, UserSession

if TYPE_CHECKING:
    from fragcache.registry import Registry
    from fragcache.requests.queue import RequestQueue

logger = logging.getLogger(__name__)

SEND_REQUESTS_TASK = "send_requests"


class Sender:
    """Replays the requests of one queue."""

    def __init__(self, queue: RequestQueue, registry: Registry):
        self.queue = queue
        self.registry = registry
        self.delay: float | None = None
        self.between: float | None = None
        self._session: UserSession | None = None

    @property
    def session_user(self) -> SessionUser | None:
        return self.registry.session_users.fetch(self.queue.user_type)

    @property
    def session(self) -> UserSession:
        if self._session is None:
            self._session = self.queue.new_session(self.session_user)
        return self._session

    async def close_session(self) -> None:
        if self._session is not None:
            await self._session.aclose()
            self._session = None

    async def start(self, delay: float | None = None, between: float | None = None) -> None:
        """Send all requests now, or book a deferred replay."""
        logger.info(f"Processing request queue for user_type {self.queue.user_type!r}")
        self.delay = delay
        self.between = between
        if delay is not None or between is not None:
            await self.schedule_requests(delay or 0)
            self.queue.clear()
        else:
            await self.send_all_requests()

    async def send_next_request(self) -> httpx.Response | None:
        """Send the oldest queued request.

        A request that fails is put back at the head of the queue before the
        error propagates.
        """
        request = self.queue.next_request()
        if request is None:
            return None

        logger.info(f"Sending {request.describe()} to {self.queue.target}")
        metrics = get_metrics()
        started = time.perf_counter()
        try:
            response = await self.session.send_request(
                request.method, request.path, request.parameters, request.options
            )
        except Exception:
            self.queue.push_front(request)
            metrics.requests_sent_total.labels(
                user_type=self.queue.user_type, target=str(self.queue.target), status="error"
            ).inc()
            raise
        finally:
            metrics.replay_duration_seconds.labels(user_type=self.queue.user_type).observe(
                time.perf_counter() - started
            )

        metrics.requests_sent_total.labels(
            user_type=self.queue.user_type,
            target=str(self.queue.target),
            status=str(response.status_code),
        ).inc()
        return response

    async def send_all_requests(self) -> int:
        sent = 0
        while self.queue.size > 0:
            await self.send_next_request()
            sent += 1
        return sent

    def _is_same_queue(self, job: Job) -> bool:
        snapshot = job.payload.get("queue") or {}
        return self.queue.same_queue(snapshot)

    async def schedule_requests(self, wait: float = 0) -> str | None:
        """Book a send_requests job running ``wait`` seconds from now.

        Returns the job id, or None when there is nothing to send.
        """
        if self.queue.size == 0:
            return None

        await self.close_session()

        jobs = self.registry.jobs
        carried: list[Request] = []
        previous = await jobs.find_jobs(
            SEND_REQUESTS_TASK, queue=self.queue.processing_key, match=self._is_same_queue
        )
        for job in previous:
            # A job claimed in the meantime sends its own requests
            if await jobs.cancel_job(job.id):
                carried.extend(
                    Request.from_dict(item) for item in job.payload["queue"].get("requests", [])
                )

        # A re-booked snapshot holds the oldest requests; a live queue the newest
        if self.queue.detached:
            ordered = [*self.queue.requests, *carried]
        else:
            ordered = [*carried, *self.queue.requests]
        snapshot = self.queue.to_dict()
        merged: list[Request] = []
        for request in ordered:
            if request not in merged:
                merged.append(request)
        snapshot["requests"] = [request.to_dict() for request in merged]

        job_id = await jobs.submit(
            SEND_REQUESTS_TASK,
            {"queue": snapshot, "delay": self.delay, "between": self.between},
            queue=self.queue.processing_key,
            run_at=utcnow() + timedelta(seconds=wait),
            priority=self.registry.settings.replay_priority,
        )
        logger.info(
            f"Scheduled {len(merged)} request(s) for user_type {self.queue.user_type!r} "
            f"in {wait}s (job {job_id}, replaced {len(previous)})"
        )
        return job_id

    async def perform(self, between: float | None = None) -> int:
        """Run one booked replay against this (snapshot) queue."""
        self.between = between
        with LogContext(user_type=self.queue.user_type, queue=self.queue.processing_key):
            logger.info(f"Processing request queue for user_type {self.queue.user_type!r}")
            try:
                if between:
                    sent = 1 if await self.send_next_request() is not None else 0
                else:
                    sent = await self.send_all_requests()
            finally:
                await self.close_session()
            await self.success()
        return sent

    async def success(self) -> None:
        """Re-book the remaining requests after a throttled send."""
        if self.queue.size > 0:
            await self.schedule_requests(self.between or 0)
