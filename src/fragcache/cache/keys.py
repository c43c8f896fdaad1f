"""Cache key schema for fragcache.

Key format: {prefix}:views:{variant}/{fragment_id}-{version}

Where:
- prefix: "fragcache" (namespace for a shared Redis)
- variant: the fragment's type tag, e.g. "Page"
- fragment_id: the fragment's row id
- version: the fragment's logical timestamp, bumped on every touch

A touch therefore never overwrites content in place: the next render writes
under a fresh key and the old entry becomes unreachable.
"""

from __future__ import annotations


class CacheKeys:
    """Cache key generator following consistent naming convention."""

    PREFIX = "fragcache"
    NAMESPACE = "views"

    @classmethod
    def fragment(cls, variant: str, fragment_id: int, version: int) -> str:
        """Key for the current content of a fragment."""
        return f"{cls.PREFIX}:{cls.NAMESPACE}:{variant}/{fragment_id}-{version}"

    @classmethod
    def fragment_pattern(cls, variant: str, fragment_id: int) -> str:
        """Pattern matching every version of a fragment's content.

        Use with CacheStore.delete_matching.
        """
        return f"{cls.PREFIX}:{cls.NAMESPACE}:{variant}/{fragment_id}-*"

    @classmethod
    def parse_key(cls, key: str) -> dict[str, str] | None:
        """Parse a fragment cache key into its components.

        Returns None if the key doesn't match the expected format.
        """
        parts = key.split(":", 2)
        if len(parts) != 3 or parts[0] != cls.PREFIX or parts[1] != cls.NAMESPACE:
            return None

        variant, _, rest = parts[2].partition("/")
        fragment_id, sep, version = rest.rpartition("-")
        if not variant or not sep or not fragment_id.isdigit() or not version.isdigit():
            return None

        return {
            "prefix": parts[0],
            "variant": variant,
            "fragment_id": fragment_id,
            "version": version,
        }
