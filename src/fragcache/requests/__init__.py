"""Request replay for fragcache.

Provides:
- Request: an immutable replay request
- UserSession variants performing requests as a user class
- RequestQueue variants and their registry
- Sender: immediate or deferred replay of a queue
"""

from fragcache.requests.queue import (
    ExternalRequestQueue,
    InternalRequestQueue,
    RequestQueue,
    RequestQueueRegistry,
)
from fragcache.requests.request import Request
from fragcache.requests.sender import SEND_REQUESTS_TASK, Sender
from fragcache.requests.session import (
    AppInstance,
    ExternalUserSession,
    InternalUserSession,
    SessionUser,
    SessionUserRegistry,
    UserSession,
)

__all__ = [
    "Request",
    # Sessions
    "AppInstance",
    "SessionUser",
    "SessionUserRegistry",
    "UserSession",
    "InternalUserSession",
    "ExternalUserSession",
    # Queues
    "RequestQueue",
    "InternalRequestQueue",
    "ExternalRequestQueue",
    "RequestQueueRegistry",
    "Sender",
    "SEND_REQUESTS_TASK",
]
