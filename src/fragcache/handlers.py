"""Deferred invalidation handlers.

A Handler is a unit of invalidation work created while a request is being
served and run later in a batch. Creating many handlers for the same record
within one unit of work lets the batch touch that record's fragments once
per handler instead of once per event.

Handlers are serialized by class name and argument dict, so every Handler
subclass must be importable by the worker and take only JSON-compatible
keyword arguments.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar

from fragcache.errors import FragcacheError
from fragcache.jobs.queue import JobQueue

if TYPE_CHECKING:
    from fragcache.fragments.repository import FragmentRepository
    from fragcache.registry import Registry

logger = logging.getLogger(__name__)

DISPATCH_HANDLERS_TASK = "dispatch_handlers"


class Handler:
    """Base class for deferred handlers."""

    _classes: ClassVar[dict[str, type[Handler]]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        Handler._classes[cls.__name__] = cls

    def __init__(self, **args: Any):
        self.args = args

    async def call(self, repo: FragmentRepository) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not define call()")

    @classmethod
    def lookup(cls, name: str) -> type[Handler]:
        handler_class = Handler._classes.get(name)
        if handler_class is None:
            raise FragcacheError(f"Unknown handler class: {name!r}")
        return handler_class

    def to_dict(self) -> dict[str, Any]:
        return {"class_name": type(self).__name__, "args": self.args}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Handler:
        return cls.lookup(data["class_name"])(**data.get("args", {}))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.args!r})"


class TouchFragmentsHandler(Handler):
    """Touch every fragment of a variant for one record id."""

    def __init__(self, fragment_type: str, record_id: Any):
        super().__init__(fragment_type=fragment_type, record_id=record_id)

    async def call(self, repo: FragmentRepository) -> None:
        await repo.touch_fragments_for_record(self.args["fragment_type"], self.args["record_id"])


class HandlerList:
    """Handlers created since the last dispatch, in creation order."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def create(self, handler_class: type[Handler], **args: Any) -> Handler:
        handler = handler_class(**args)
        self._handlers.append(handler)
        return handler

    def all(self) -> list[Handler]:
        return list(self._handlers)

    def clear(self) -> None:
        self._handlers = []

    def take(self) -> list[Handler]:
        """Remove and return every pending handler."""
        handlers, self._handlers = self._handlers, []
        return handlers

    def __len__(self) -> int:
        return len(self._handlers)


class Dispatcher:
    """Runs a batch of handlers, then starts every request queue."""

    def __init__(self, tasks: list[Handler], registry: Registry):
        self.tasks = tasks
        self.registry = registry

    async def perform(self, repo: FragmentRepository) -> None:
        for task in self.tasks:
            logger.info(f"Dispatching task for handler class {type(task).__name__}")
            await task.call(repo)
        for queue in self.registry.queues.all():
            await queue.start()


async def dispatch_pending(registry: Registry, jobs: JobQueue | None = None) -> str | None:
    """Book one dispatch_handlers job for all pending handlers.

    Returns the job id, or None when no handler is pending.
    """
    tasks = registry.handlers.take()
    if not tasks:
        return None

    jobs = jobs or registry.jobs
    job_id = await jobs.submit(
        DISPATCH_HANDLERS_TASK,
        {"tasks": [task.to_dict() for task in tasks]},
        queue=registry.processing_key,
        priority=registry.settings.dispatch_priority,
    )
    logger.info(f"Booked {len(tasks)} handler(s) for dispatch (job {job_id})")
    return job_id
