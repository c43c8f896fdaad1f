"""Fragment tree ORM model.

A fragment is a node in a forest of cached-content trees. Each row records
the fragment's position (parent, root) and its semantic identity (record,
user, user class, key); the fragment's cache key combines its variant, id
and logical timestamp.

Variants are declared by subclassing Fragment (single-table inheritance on
the ``type`` column, polymorphic identity = class name) and setting class
attributes:

    class ArticlePage(Fragment):
        needs_record_id = True
        record_type = "Article"
        needs_user_type = True

        @classmethod
        def request_path_for(cls, record_id):
            return f"/articles/{record_id}"

        def request_path(self):
            return self.request_path_for(self.record_id)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, ClassVar

import orjson
from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from fragcache.cache.keys import CacheKeys
from fragcache.errors import UnknownVariantError
from fragcache.persistence.tables import Base
from fragcache.requests.request import Request

IDENTITY_ATTRIBUTES = ("record_id", "user_id", "user_type", "key")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def identity_for(variant: str, search: dict[str, Any]) -> str:
    """Canonical identity string backing the uniqueness constraint.

    ``search`` holds the parent id (absent for roots) and only those identity
    attributes the variant needs; everything else is encoded as null.
    """
    return orjson.dumps(
        [variant, search.get("parent_id"), *(search.get(name) for name in IDENTITY_ATTRIBUTES)]
    ).decode()


class Fragment(Base):
    """A cached-content tree node."""

    __tablename__ = "fragments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Variant tag (polymorphic discriminator)
    type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Tree position
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("fragments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    root_id: Mapped[int | None] = mapped_column(
        ForeignKey("fragments.id", ondelete="CASCADE"), nullable=True, index=True
    )

    # Semantic identity
    record_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    user_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Unique composite of type, parent and the identity attributes the variant needs
    identity: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)

    # Bookkeeping content that must not count as a content change
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Logical timestamp, part of the cache key
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @declared_attr.directive
    def __mapper_args__(cls) -> dict[str, Any]:
        if cls.__name__ == "Fragment":
            return {"polymorphic_on": "type", "polymorphic_identity": "Fragment"}
        return {"polymorphic_identity": cls.__name__}

    # -------------------------------------------------------------------------
    # Variant declarations
    # -------------------------------------------------------------------------

    needs_record_id: ClassVar[bool] = False
    needs_user_id: ClassVar[bool] = False
    needs_user_type: ClassVar[bool] = False
    needs_key: ClassVar[bool] = False

    # Alias under which callers pass ``key``, e.g. "slug"
    key_name: ClassVar[str | None] = None

    # Domain-record class name that record_id refers to
    record_type: ClassVar[str | None] = None

    # User classes whose request queues receive this variant's requests
    user_types: ClassVar[tuple[str, ...] | None] = None

    # Classifies a user into a user class; None defers to the registry default
    user_type_mapping: ClassVar[Callable[[Any], str | None] | None] = None

    # Attribute used to index this fragment's children
    child_search_key: ClassVar[str | None] = None

    request_method: ClassVar[str] = "GET"
    request_options: ClassVar[dict[str, Any] | None] = None

    # List variants: membership record class, how to get the list's record id
    # from a membership record, and whether to defer the touch as a Handler
    list_membership: ClassVar[str | None] = None
    list_record: ClassVar[str | Callable[[Any], Any] | None] = None
    list_delay: ClassVar[bool] = False

    # In-memory caches filled by FragmentRepository, never persisted
    loaded_children = None
    indexed_children = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.list_membership and "child_search_key" not in cls.__dict__:
            cls.child_search_key = "record_id"

    # -------------------------------------------------------------------------
    # Variant lookup
    # -------------------------------------------------------------------------

    @classmethod
    def variant(cls, name: str | type[Fragment]) -> type[Fragment]:
        """Resolve a type tag to its mapped Fragment class."""
        if isinstance(name, type):
            if issubclass(name, Fragment):
                return name
            raise UnknownVariantError(name.__name__)
        mapper = Fragment.__mapper__.polymorphic_map.get(name)
        if mapper is None:
            raise UnknownVariantError(name)
        return mapper.class_

    @classmethod
    def variants(cls) -> list[type[Fragment]]:
        """All mapped subclasses of Fragment."""
        return [
            mapper.class_
            for name, mapper in Fragment.__mapper__.polymorphic_map.items()
            if mapper.class_ is not Fragment
        ]

    @classmethod
    def needs(cls, attribute: str) -> bool:
        if attribute not in IDENTITY_ATTRIBUTES:
            raise ValueError(f"Not an identity attribute: {attribute!r}")
        return bool(getattr(cls, f"needs_{attribute}"))

    @classmethod
    def option_name(cls, attribute: str) -> str:
        """Name under which callers supply an identity attribute."""
        if attribute == "key" and cls.key_name:
            return cls.key_name
        return attribute

    @classmethod
    def list_record_id(cls, membership: Any) -> Any:
        """The record id of the list that a membership record belongs to."""
        accessor = cls.list_record
        if isinstance(accessor, str):
            return getattr(membership, accessor)
        if callable(accessor):
            return accessor(membership)
        return None

    # -------------------------------------------------------------------------
    # Cache keys
    # -------------------------------------------------------------------------

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def cache_key(self) -> str:
        return CacheKeys.fragment(self.type, self.id, self.version or 0)

    @property
    def cache_pattern(self) -> str:
        return CacheKeys.fragment_pattern(self.type, self.id)

    def __getattr__(self, name: str) -> Any:
        # Expose ``key`` under the variant's key_name alias
        key_name = type(self).key_name
        if key_name and name == key_name:
            return self.key
        raise AttributeError(name)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    @classmethod
    def request_path_for(cls, record_id: Any) -> str | None:
        """Path that renders this variant for a record; None if not requestable."""
        return None

    @classmethod
    def request_parameters_for(cls, record_id: Any) -> dict[str, Any] | None:
        return None

    @classmethod
    def is_requestable(cls) -> bool:
        return cls.request_path is not Fragment.request_path

    @classmethod
    def is_record_requestable(cls) -> bool:
        return cls.request_path_for.__func__ is not Fragment.request_path_for.__func__  # type: ignore[attr-defined]

    @classmethod
    def request_for(cls, record_id: Any) -> Request | None:
        """Request rendering this variant for a given record id."""
        path = cls.request_path_for(record_id)
        if path is None:
            return None
        return Request(
            cls.request_method,
            path,
            cls.request_parameters_for(record_id),
            cls.request_options,
        )

    def request_path(self) -> str | None:
        """Path whose response renders this fragment; None if not requestable."""
        return None

    def request_parameters(self) -> dict[str, Any] | None:
        return None

    def request(self) -> Request | None:
        """The Request that regenerates this fragment's content."""
        path = self.request_path()
        if path is None:
            return None
        return Request(self.request_method, path, self.request_parameters(), self.request_options)

    def __repr__(self) -> str:
        return f"<{self.type} id={self.id} parent={self.parent_id} v={self.version}>"
