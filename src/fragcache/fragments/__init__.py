"""Fragment tree for fragcache.

Provides:
- Fragment: the ORM model and base class of all fragment variants
- FragmentRepository: find-or-create, touch, destroy and pruning
- CacheBuilder / cache_fragment: rendering through the cache store
- subscribe / install: record event subscriptions of variants
"""

from fragcache.fragments.builder import CacheBuilder, cache_fragment, fragment_builder
from fragcache.fragments.model import Fragment
from fragcache.fragments.repository import FragmentRepository
from fragcache.fragments.subscriptions import install, subscribe

__all__ = [
    "Fragment",
    "FragmentRepository",
    "CacheBuilder",
    "cache_fragment",
    "fragment_builder",
    "subscribe",
    "install",
]
