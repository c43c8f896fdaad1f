"""Repository for the fragment tree.

All tree operations go through FragmentRepository, which holds the session
and the registry (cache store, request queues, record classes). Fragments
have no ORM relationships; children are loaded with explicit queries and
kept on the instance, indexed by the variant's child_search_key when it
declares one.

Invalidation:
- touch() bumps a fragment's version, queues its request and touches its
  parent, so a touch at depth D produces D+1 touches
- update_memo() bumps the version without either side effect
- destroy() removes cache entries and rows for a whole subtree, then touches
  the surviving parent
- touch_or_destroy() prunes fragments whose cache entries are gone

Example:
    async with session_context() as session:
        repo = FragmentRepository(session, registry)
        page = await repo.root(type="ArticlePage", record_id=42, user=current_user)
        body = await repo.child(page, type="ArticleBody")
        await repo.touch(body)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fragcache.errors import IdentityMismatchError, MissingAttributeError, UnknownRecordTypeError
from fragcache.fragments.model import IDENTITY_ATTRIBUTES, Fragment, identity_for, utcnow
from fragcache.observability.metrics import get_metrics
from fragcache.requests.request import Request

if TYPE_CHECKING:
    from fragcache.registry import Registry

logger = logging.getLogger(__name__)

VariantRef = str | type[Fragment]


class FragmentRepository:
    """Find-or-create, invalidation and pruning for the fragment tree."""

    def __init__(self, session: AsyncSession, registry: Registry | None = None):
        if registry is None:
            from fragcache.registry import get_registry

            registry = get_registry()
        self.session = session
        self.registry = registry

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def user_type_for(self, variant: VariantRef, user: Any) -> str | None:
        """Classify a user into the user class a variant renders for."""
        cls = Fragment.variant(variant)
        mapping = cls.user_type_mapping or self.registry.default_user_type
        return mapping(user)

    def attributes(
        self, options: dict[str, Any]
    ) -> tuple[type[Fragment], dict[str, Any], dict[str, Any]]:
        """Split lookup options into (variant, search attributes, extra attributes).

        Search attributes are the parent id and the identity attributes the
        variant needs; fragments are unique by these. A ``user`` option
        supplies user_id and user_type where the variant needs them. Extra
        attributes are only set when a fragment is created.
        """
        options = dict(options)
        variant = options.pop("type", None)
        if variant is None:
            raise ValueError("A 'type' is needed to find or create a fragment")
        cls = Fragment.variant(variant)

        user = options.pop("user", None)
        options.setdefault("user_type", self.user_type_for(cls, user))
        options.setdefault("user_id", getattr(user, "id", None))

        search: dict[str, Any] = {}
        parent_id = options.pop("parent_id", None)
        if parent_id is not None:
            search["parent_id"] = parent_id

        for attribute in IDENTITY_ATTRIBUTES:
            if not cls.needs(attribute):
                continue
            name = cls.option_name(attribute)
            value = options.pop(name, None)
            if value is None:
                raise MissingAttributeError(cls.__name__, name)
            if attribute == "key":
                value = str(value)
            elif attribute in ("record_id", "user_id"):
                value = int(value)
            search[attribute] = value

        # Only stored when the variant needs them
        options.pop("user_id", None)
        options.pop("user_type", None)

        return cls, search, options

    async def _find(
        self,
        cls: type[Fragment],
        search: dict[str, Any],
        filters: dict[str, Any] | None = None,
    ) -> Fragment | None:
        stmt = select(cls).where(cls.identity == identity_for(cls.__name__, search))
        for name, value in (filters or {}).items():
            stmt = stmt.where(getattr(cls, name) == value)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _create(
        self,
        cls: type[Fragment],
        search: dict[str, Any],
        extra: dict[str, Any],
    ) -> Fragment:
        """Insert a fragment, or return the row a concurrent writer inserted first."""
        now = utcnow()
        fragment = cls(
            **extra,
            **search,
            identity=identity_for(cls.__name__, search),
            version=0,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(fragment)
        except IntegrityError:
            existing = await self._find(cls, search)
            if existing is None:
                raise
            logger.debug(f"Lost create race for {cls.__name__}, using {existing.id}")
            return existing

        fragment.loaded_children = []
        if fragment.child_search_key:
            fragment.indexed_children = {}
        logger.debug(f"Created fragment {fragment!r}")
        return fragment

    # -------------------------------------------------------------------------
    # Roots
    # -------------------------------------------------------------------------

    async def root(self, fragment: Fragment | None = None, **options: Any) -> Fragment:
        """Find or create the unique root fragment matching ``options``.

        Passing ``fragment=`` returns it unchanged after checking it is a root.
        """
        if fragment is not None:
            if fragment.parent_id is not None:
                raise IdentityMismatchError(
                    f"Fragment {fragment.id} was passed as a root, "
                    f"but it's a child of Fragment {fragment.parent_id}"
                )
            return fragment

        cls, search, extra = self.attributes(options)
        fragment = await self._find(cls, search)
        if fragment is None:
            fragment = await self._create(cls, search, extra)
        if fragment.child_search_key:
            await self.index_children(fragment)
        return fragment

    async def existing(self, fragment: Fragment | None = None, **options: Any) -> Fragment | None:
        """Look up a root fragment without creating it.

        Extra attributes such as a record_id the variant doesn't need still
        narrow the lookup.
        """
        if fragment is not None:
            if fragment.parent_id is not None:
                raise IdentityMismatchError(
                    f"Fragment {fragment.id} was passed as an existing root, "
                    f"but it's a child of Fragment {fragment.parent_id}"
                )
            return fragment

        cls, search, extra = self.attributes(options)
        fragment = await self._find(cls, search, extra)
        if fragment is not None and fragment.child_search_key:
            await self.index_children(fragment)
        return fragment

    async def roots(self) -> list[Fragment]:
        result = await self.session.execute(
            select(Fragment).where(Fragment.parent_id.is_(None)).order_by(Fragment.id)
        )
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Children
    # -------------------------------------------------------------------------

    async def children(self, fragment: Fragment) -> list[Fragment]:
        """The fragment's children, loaded once per session."""
        if fragment.loaded_children is None:
            result = await self.session.execute(
                select(Fragment).where(Fragment.parent_id == fragment.id).order_by(Fragment.id)
            )
            fragment.loaded_children = list(result.scalars().all())
        return list(fragment.loaded_children)

    async def parent(self, fragment: Fragment) -> Fragment | None:
        if fragment.parent_id is None:
            return None
        return await self.session.get(Fragment, fragment.parent_id)

    async def index_children(self, fragment: Fragment) -> dict[Any, list[Fragment]] | None:
        """Group the fragment's children by its child_search_key."""
        key = fragment.child_search_key
        if not key:
            return None
        index: dict[Any, list[Fragment]] = {}
        for child in await self.children(fragment):
            index.setdefault(getattr(child, key), []).append(child)
        fragment.indexed_children = index
        return index

    def _attach(self, parent: Fragment, child: Fragment) -> None:
        if parent.loaded_children is not None and child not in parent.loaded_children:
            parent.loaded_children.append(child)
        key = parent.child_search_key
        if key and parent.indexed_children is not None:
            siblings = parent.indexed_children.setdefault(getattr(child, key), [])
            if child not in siblings:
                siblings.append(child)

    def _detach(self, parent: Fragment, child: Fragment) -> None:
        if parent.loaded_children is not None and child in parent.loaded_children:
            parent.loaded_children.remove(child)
        if parent.indexed_children is not None:
            for siblings in parent.indexed_children.values():
                if child in siblings:
                    siblings.remove(child)

    async def child(
        self,
        parent: Fragment,
        child: Fragment | None = None,
        existing: bool = False,
        **options: Any,
    ) -> Fragment | None:
        """Find or create the child of ``parent`` matching ``options``.

        The child inherits the parent's root and, unless its variant needs a
        record id of its own, the parent's record_id. Lookup goes through the
        parent's indexed children when an index applies, otherwise through
        its loaded children. The returned fragment's children are loaded and
        indexed one level ahead.
        """
        if child is not None:
            if child.parent_id != parent.id:
                raise IdentityMismatchError(
                    f"Fragment {child.id} was passed as a child of Fragment {parent.id}, "
                    f"but its parent is {child.parent_id}"
                )
            return child

        if options.get("type") is None:
            raise ValueError("A 'type' is needed to find or create a fragment")
        variant = Fragment.variant(options["type"])

        options.setdefault("root_id", parent.root_id or parent.id)
        if not variant.needs_record_id:
            options.setdefault("record_id", parent.record_id)
        options["parent_id"] = parent.id

        cls, search, extra = self.attributes(options)
        select_attributes = {**search, "type": cls.__name__}

        candidates: list[Fragment] | None = None
        key = parent.child_search_key
        if key and key in select_attributes and parent.indexed_children is not None:
            candidates = parent.indexed_children.get(select_attributes.pop(key), [])
        if candidates is None:
            candidates = await self.children(parent)

        fragment = next(
            (
                candidate
                for candidate in candidates
                if all(getattr(candidate, name) == value for name, value in select_attributes.items())
            ),
            None,
        )

        if fragment is None:
            if existing:
                return None
            fragment = await self._create(cls, search, extra)
            self._attach(parent, fragment)

        await self.children(fragment)
        if fragment.child_search_key:
            await self.index_children(fragment)
        return fragment

    async def existing_child(self, parent: Fragment, **options: Any) -> Fragment | None:
        return await self.child(parent, existing=True, **options)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def _bump(self, fragment: Fragment, memo: str | None = None) -> None:
        """Increment the version in the database, not from the loaded value.

        Concurrent touches of the same row each produce a new version.
        """
        values: dict[str, Any] = {"version": Fragment.version + 1, "updated_at": utcnow()}
        if memo is not None:
            values["memo"] = memo
        await self.session.flush()
        result = await self.session.execute(
            update(Fragment)
            .where(Fragment.id == fragment.id)
            .values(**values)
            .returning(Fragment.version, Fragment.updated_at)
            .execution_options(synchronize_session=False)
        )
        version, updated_at = result.one()
        set_committed_value(fragment, "version", version)
        set_committed_value(fragment, "updated_at", updated_at)
        if memo is not None:
            set_committed_value(fragment, "memo", memo)

    async def touch(self, fragment: Fragment, no_request: bool = False) -> None:
        """Mark a fragment changed.

        Queues the fragment's request unless ``no_request`` is set, then
        touches the parent. Touching the parent is a regular touch and
        queues the parent's request.
        """
        await self._bump(fragment)
        get_metrics().fragments_touched_total.labels(variant=fragment.type).inc()
        logger.debug(f"Touched {fragment!r}")

        if not no_request:
            await self.queue_request(type(fragment), fragment.request())

        parent = await self.parent(fragment)
        if parent is not None:
            await self.touch(parent)

    async def update_memo(self, fragment: Fragment, memo: str) -> None:
        """Record bookkeeping content.

        Changes the cache key but neither queues a request nor touches the
        parent, so parent and child renders cannot trigger each other.
        """
        await self._bump(fragment, memo=memo)

    async def destroy(self, fragment: Fragment, delete_matches: bool = False) -> None:
        """Delete a fragment, its subtree and their cache entries.

        With ``delete_matches`` every cached version of each fragment is
        removed, otherwise only the entry for its current version. The
        surviving parent is touched afterwards.
        """
        state = inspect(fragment)
        if state.deleted or state.was_deleted:
            return

        parent = await self.parent(fragment)
        await self._destroy(fragment, delete_matches)

        if parent is not None:
            self._detach(parent, fragment)
            await self.touch(parent)

    async def _destroy(self, fragment: Fragment, delete_matches: bool) -> None:
        cache = self.registry.cache
        if delete_matches:
            await cache.delete_matching(fragment.cache_pattern)
        else:
            await cache.delete(fragment.cache_key)

        for child in await self.children(fragment):
            await self._destroy(child, delete_matches)

        # Children go first so the database cascade has nothing left to remove
        await self.session.delete(fragment)
        await self.session.flush()
        get_metrics().fragments_destroyed_total.labels(variant=fragment.type).inc()
        logger.debug(f"Destroyed {fragment!r}")

    async def touch_tree(self, fragment: Fragment, no_request: bool = False) -> None:
        """Touch every leaf of the subtree; ancestors are touched through propagation."""
        children = await self.children(fragment)
        for child in children:
            await self.touch_tree(child, no_request=no_request)
        if not children:
            await self.touch(fragment, no_request=no_request)

    async def touch_or_destroy(self, fragment: Fragment) -> None:
        """Prune the subtree against the cache store.

        A fragment whose cache entry is absent is destroyed along with its
        subtree, even when its children still have entries. Fragments that
        are present recurse into their children; leaves are touched without
        queueing requests.
        """
        logger.debug(f"touch_or_destroy {fragment!r}")
        if await self.cache_exists(fragment):
            children = await self.children(fragment)
            for child in children:
                await self.touch_or_destroy(child)
            if not children:
                await self.touch(fragment, no_request=True)
        else:
            await self.destroy(fragment)

    async def cache_exists(self, fragment: Fragment) -> bool:
        return await self.registry.cache.exists(fragment.cache_key)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def fragments_for_record(self, variant: VariantRef, record_id: Any) -> list[Fragment]:
        """All fragments of a variant for a record id.

        Fragments for a record only exist once something has rendered them,
        so the list may be empty.
        """
        cls = Fragment.variant(variant)
        result = await self.session.execute(
            select(cls).where(cls.record_id == record_id).order_by(cls.id)
        )
        return list(result.scalars().all())

    async def touch_fragments_for_record(self, variant: VariantRef, record_id: Any) -> None:
        for fragment in await self.fragments_for_record(variant, record_id):
            await self.touch(fragment)

    async def remove_fragments_for_record(self, variant: VariantRef, record_id: Any) -> None:
        for fragment in await self.fragments_for_record(variant, record_id):
            await self.destroy(fragment)

    async def record_type(self, fragment: Fragment) -> str | None:
        """The record class name of a fragment, inherited from its nearest declaring ancestor."""
        cls = type(fragment)
        if cls.needs_record_id:
            return cls.record_type
        parent = await self.parent(fragment)
        if parent is None:
            return None
        return await self.record_type(parent)

    async def record(self, fragment: Fragment) -> Any:
        """Load the domain record a fragment's record_id refers to."""
        if fragment.record_id is None:
            return None
        name = await self.record_type(fragment)
        if name is None:
            return None
        model = self.registry.record_types.get(name)
        if model is None:
            raise UnknownRecordTypeError(name)
        return await self.session.get(model, fragment.record_id)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def queue_request(self, variant: VariantRef, request: Request | None) -> None:
        """Add a request to every queue relevant to the variant."""
        if request is None:
            return
        cls = Fragment.variant(variant)
        for queue in self.registry.queues.for_variant(cls):
            if queue.add(request):
                get_metrics().requests_queued_total.labels(user_type=queue.user_type).inc()
                logger.debug(f"Queued {request.describe()} for {queue!r}")

    async def remove_queued_request(self, variant: VariantRef, user: Any, request_path: str) -> None:
        """Pull a now-obsolete request from the queues of the user's class."""
        cls = Fragment.variant(variant)
        user_type = self.user_type_for(cls, user)
        for queue in self.registry.queues.for_variant(cls):
            if queue.user_type == user_type:
                queue.remove_path(request_path)
