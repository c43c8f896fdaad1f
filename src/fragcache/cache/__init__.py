"""Cache layer for fragcache.

Rendered fragment content lives in a key/value store keyed by fragment
identity and logical timestamp. Entries carry no TTL; they are removed only
when the owning fragment is destroyed.
"""

from fragcache.cache.keys import CacheKeys
from fragcache.cache.store import (
    CacheStore,
    MemoryCacheStore,
    RedisCacheStore,
    close_redis,
    get_redis,
)

__all__ = [
    "CacheKeys",
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    "get_redis",
    "close_redis",
]
