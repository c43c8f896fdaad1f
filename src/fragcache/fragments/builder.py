"""Rendering integration.

cache_fragment() renders a root fragment through the cache store: cached
content is returned as is, otherwise ``render`` is called with a
CacheBuilder and its result written under the fragment's cache key. Inside
``render``, builder.cache_child() does the same for a child fragment, so
nested content is cached per fragment.

Example:
    async def render_page(page):
        body = await page.cache_child(render_body, type="ArticleBody")
        return f"<main>{body}</main>"

    html = await cache_fragment(repo, render_page, type="ArticlePage", record_id=42, user=user)
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, cast

from fragcache.fragments.model import Fragment
from fragcache.fragments.repository import FragmentRepository

Render = Callable[["CacheBuilder"], "str | Awaitable[str]"]


class CacheBuilder:
    """Renders one fragment and the children below it."""

    def __init__(self, repo: FragmentRepository, fragment: Fragment, user: Any = None):
        self.repo = repo
        self.fragment = fragment
        self.user = user

    async def fetch(self, render: Render, no_cache: bool = False) -> str:
        """Return the fragment's cached content, rendering and caching it if absent."""
        cache = self.repo.registry.cache
        key = self.fragment.cache_key
        if not no_cache:
            cached = await cache.read(key)
            if cached is not None:
                return cached.decode()

        content = render(self)
        if inspect.isawaitable(content):
            content = await content

        if not no_cache:
            await cache.write(key, content)
        return content

    async def cache_child(
        self,
        render: Render,
        no_cache: bool = False,
        child: Fragment | None = None,
        **options: Any,
    ) -> str:
        """Render a child of this builder's fragment through the cache."""
        options.setdefault("user", self.user)
        fragment = cast(Fragment, await self.repo.child(self.fragment, child=child, **options))
        return await CacheBuilder(self.repo, fragment, self.user).fetch(render, no_cache)


async def cache_fragment(
    repo: FragmentRepository,
    render: Render,
    no_cache: bool = False,
    fragment: Fragment | None = None,
    **options: Any,
) -> str:
    """Render a root fragment through the cache."""
    user = options.get("user")
    root = await repo.root(fragment=fragment, **options)
    return await CacheBuilder(repo, root, user).fetch(render, no_cache)


async def fragment_builder(repo: FragmentRepository, **options: Any) -> CacheBuilder | None:
    """A builder for an existing root fragment, e.g. to render one of its children on its own."""
    user = options.get("user")
    root = await repo.existing(**options)
    if root is None:
        return None
    return CacheBuilder(repo, root, user)
