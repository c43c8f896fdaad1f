"""Request queues.

A RequestQueue holds the pending replay requests for one user class and one
target application instance, in FIFO order with duplicates dropped on
insert. Each queue carries two distinct addresses:

- target: the application instance that receives the replayed requests
- processing_key: the job queue whose worker runs the replay

Internal queues replay against this instance's own application in-process;
external queues prime a remote host's cache over HTTP. Both are processed by
this instance's workers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar

from fragcache.requests.request import Request
from fragcache.requests.session import (
    AppInstance,
    ExternalUserSession,
    InternalUserSession,
    SessionUser,
    UserSession,
)

if TYPE_CHECKING:
    from fragcache.fragments.model import Fragment
    from fragcache.registry import Registry
    from fragcache.requests.sender import Sender

logger = logging.getLogger(__name__)


class RequestQueue:
    """Ordered, deduplicated requests for one (user class, target) pair."""

    kind: ClassVar[str] = "internal"

    def __init__(
        self,
        user_type: str,
        target: AppInstance | str,
        processing_key: str,
        registry: Registry | None = None,
        detached: bool = False,
    ):
        self.user_type = user_type
        self.target = target if isinstance(target, AppInstance) else AppInstance(target)
        self.processing_key = processing_key
        self.registry = registry
        # Snapshots rebuilt inside a job are detached from the live registry
        self.detached = detached
        self._requests: list[Request] = []
        self._sender: Sender | None = None

    def add(self, request: Request) -> bool:
        """Append a request unless an equal one is already queued."""
        if request in self._requests:
            return False
        self._requests.append(request)
        return True

    def __lshift__(self, request: Request) -> RequestQueue:
        self.add(request)
        return self

    def push_front(self, request: Request) -> None:
        """Put a request back at the head of the queue."""
        if request not in self._requests:
            self._requests.insert(0, request)

    @property
    def size(self) -> int:
        return len(self._requests)

    def __len__(self) -> int:
        return len(self._requests)

    @property
    def requests(self) -> list[Request]:
        return list(self._requests)

    def next_request(self) -> Request | None:
        """Pop the oldest request."""
        if not self._requests:
            return None
        return self._requests.pop(0)

    def clear(self) -> None:
        self._requests = []

    def remove_path(self, path: str) -> int:
        """Drop every request for a path; returns how many were removed."""
        before = len(self._requests)
        self._requests = [request for request in self._requests if request.path != path]
        removed = before - len(self._requests)
        if removed:
            logger.debug(f"Removed {removed} queued request(s) for {path} from {self!r}")
        return removed

    def same_queue(self, data: dict[str, Any]) -> bool:
        """Whether a serialized snapshot belongs to this queue."""
        return (
            data.get("kind") == self.kind
            and data.get("user_type") == self.user_type
            and data.get("target") == str(self.target)
        )

    def new_session(self, user: SessionUser | None) -> UserSession:
        raise NotImplementedError

    @property
    def sender(self) -> Sender:
        if self._sender is None:
            from fragcache.requests.sender import Sender

            registry = self.registry
            if registry is None:
                from fragcache.registry import get_registry

                registry = get_registry()
            self._sender = Sender(self, registry)
        return self._sender

    async def start(self, delay: float | None = None, between: float | None = None) -> None:
        """Send now, or schedule a deferred replay when delay or between is given."""
        await self.sender.start(delay=delay, between=between)

    def to_dict(self) -> dict[str, Any]:
        """Serialize a snapshot of the queue."""
        return {
            "kind": self.kind,
            "user_type": self.user_type,
            "target": str(self.target),
            "processing_key": self.processing_key,
            "requests": [request.to_dict() for request in self._requests],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], registry: Registry | None = None) -> RequestQueue:
        """Rebuild a detached snapshot of a queue."""
        queue_class = QUEUE_KINDS.get(data.get("kind", "internal"), InternalRequestQueue)
        queue = queue_class(
            data["user_type"],
            data["target"],
            data["processing_key"],
            registry=registry,
            detached=True,
        )
        for item in data.get("requests", []):
            queue.add(Request.from_dict(item))
        return queue

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(user_type={self.user_type!r}, target={str(self.target)!r}, "
            f"size={self.size})"
        )


class InternalRequestQueue(RequestQueue):
    """Replays requests against the in-process application."""

    kind = "internal"

    def new_session(self, user: SessionUser | None) -> UserSession:
        registry = self.registry
        app = registry.app if registry is not None else None
        return InternalUserSession(
            app,
            self.target,
            user,
            settings=registry.settings if registry is not None else None,
        )


class ExternalRequestQueue(RequestQueue):
    """Replays requests against a remote application instance over HTTP."""

    kind = "external"

    def new_session(self, user: SessionUser | None) -> UserSession:
        registry = self.registry
        return ExternalUserSession(
            self.target,
            user,
            settings=registry.settings if registry is not None else None,
            transport=registry.transport if registry is not None else None,
        )


QUEUE_KINDS: dict[str, type[RequestQueue]] = {
    InternalRequestQueue.kind: InternalRequestQueue,
    ExternalRequestQueue.kind: ExternalRequestQueue,
}


class RequestQueueRegistry:
    """Process-wide request queues keyed by (user class, target url)."""

    def __init__(self, registry: Registry):
        self._registry = registry
        self._queues: dict[tuple[str, str], RequestQueue] = {}

    def get(self, user_type: str, target: str | None = None) -> RequestQueue:
        """Get or create the queue for a user class and target.

        The target defaults to this instance's application; any other target
        gets an external queue.
        """
        local = str(AppInstance(self._registry.settings.application_root_url))
        target = str(AppInstance(target)) if target else local
        key = (user_type, target)
        queue = self._queues.get(key)
        if queue is None:
            queue_class = InternalRequestQueue if target == local else ExternalRequestQueue
            queue = queue_class(
                user_type,
                target,
                self._registry.processing_key,
                registry=self._registry,
            )
            self._queues[key] = queue
            logger.debug(f"Created {queue!r}")
        return queue

    def all(self) -> list[RequestQueue]:
        return list(self._queues.values())

    def for_variant(self, cls: type[Fragment]) -> list[RequestQueue]:
        """Queues receiving a variant's requests: its user classes times all targets."""
        user_types = cls.user_types or self._registry.settings.default_user_types
        return [
            self.get(user_type, target)
            for user_type in user_types
            for target in self._registry.targets()
        ]

    def pending(self) -> list[RequestQueue]:
        return [queue for queue in self._queues.values() if queue.size]

    def clear(self) -> None:
        self._queues.clear()

    async def aclose(self) -> None:
        """Close any open replay sessions."""
        for queue in self._queues.values():
            if queue._sender is not None:
                await queue._sender.close_session()
