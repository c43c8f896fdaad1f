"""Declarative event subscriptions for fragment variants.

install() wires a variant into the registry's event bus:

- classmethods decorated with @subscribe become handlers for the named
  record class and event
- a variant that needs a record id and declares its record_type removes its
  fragments when such a record is destroyed, and, if it can build a request
  from a record id, queues that request when such a record is created
- a list variant touches the list's fragments when a membership record is
  created, inline or through a deferred TouchFragmentsHandler

Example:
    class CommentList(Fragment):
        list_membership = "Comment"
        list_record = "article_id"

        @subscribe("Comment", RecordEventType.DESTROYED)
        @classmethod
        async def comment_removed(cls, repo, comment):
            await repo.touch_fragments_for_record(cls, comment.article_id)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fragcache.events.schemas import RecordEventType
from fragcache.events.subscriptions import RecordHandler, RecordHandlers, Subscriber
from fragcache.fragments.model import Fragment
from fragcache.handlers import TouchFragmentsHandler

if TYPE_CHECKING:
    from fragcache.fragments.repository import FragmentRepository
    from fragcache.registry import Registry

SUBSCRIPTIONS_ATTR = "__fragcache_subscriptions__"

_HANDLER_FIELDS = {
    RecordEventType.CREATED: "on_create",
    RecordEventType.UPDATED: "on_update",
    RecordEventType.DESTROYED: "on_destroy",
}


def subscribe(publisher: str, event_type: RecordEventType | str) -> Callable[[Any], Any]:
    """Mark a variant classmethod as a handler for a record class's event."""
    event_type = RecordEventType(event_type)

    def decorator(method: Any) -> Any:
        func = method.__func__ if isinstance(method, (classmethod, staticmethod)) else method
        marks = getattr(func, SUBSCRIPTIONS_ATTR, [])
        setattr(func, SUBSCRIPTIONS_ATTR, [*marks, (publisher, event_type)])
        return method

    return decorator


def declared_handlers(cls: type[Fragment]) -> list[tuple[str, RecordEventType, RecordHandler]]:
    """The @subscribe handlers of a variant, bound to the variant."""
    found: list[tuple[str, RecordEventType, RecordHandler]] = []
    seen: set[str] = set()
    for klass in cls.__mro__:
        if not (isinstance(klass, type) and issubclass(klass, Fragment)):
            continue
        for name, value in vars(klass).items():
            if name in seen:
                continue
            func = value.__func__ if isinstance(value, (classmethod, staticmethod)) else value
            marks = getattr(func, SUBSCRIPTIONS_ATTR, None)
            if not marks:
                continue
            seen.add(name)
            handler = getattr(cls, name)
            for publisher, event_type in marks:
                found.append((publisher, event_type, handler))
    return found


def _remove_fragments(cls: type[Fragment]) -> RecordHandler:
    async def remove_fragments(repo: FragmentRepository, record: Any) -> None:
        await repo.remove_fragments_for_record(cls, record.id)

    return remove_fragments


def _queue_record_request(cls: type[Fragment]) -> RecordHandler:
    async def queue_record_request(repo: FragmentRepository, record: Any) -> None:
        await repo.queue_request(cls, cls.request_for(record.id))

    return queue_record_request


def _touch_list(cls: type[Fragment]) -> RecordHandler:
    async def touch_list(repo: FragmentRepository, membership: Any) -> None:
        record_id = cls.list_record_id(membership)
        if record_id is None:
            return
        if cls.list_delay:
            repo.registry.handlers.create(
                TouchFragmentsHandler, fragment_type=cls.__name__, record_id=record_id
            )
        else:
            await repo.touch_fragments_for_record(cls, record_id)

    return touch_list


def install(registry: Registry, cls: type[Fragment]) -> Subscriber:
    """Register a variant's subscriptions with the registry's bus."""
    subscriber = registry.subscriber(cls)

    if cls.needs_record_id and cls.record_type:
        subscription = subscriber.subscription(cls.record_type)
        # Runs after any destroy handler of the variant itself
        subscription.add_after_destroy(_remove_fragments(cls))
        if cls.is_record_requestable():
            subscriber.subscribe_to(
                cls.record_type, RecordHandlers(on_create=_queue_record_request(cls))
            )

    if cls.list_membership:
        subscriber.subscribe_to(cls.list_membership, RecordHandlers(on_create=_touch_list(cls)))

    # Handlers declared on the variant take precedence
    for publisher, event_type, handler in declared_handlers(cls):
        subscriber.subscribe_to(publisher, RecordHandlers(**{_HANDLER_FIELDS[event_type]: handler}))

    return subscriber
