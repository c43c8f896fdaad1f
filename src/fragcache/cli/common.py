"""Shared bootstrap for CLI commands."""

from __future__ import annotations

import importlib
from typing import Any

import typer

from fragcache.cache.store import RedisCacheStore, get_redis
from fragcache.config import settings
from fragcache.jobs.queue import RedisJobQueue
from fragcache.observability.logging import configure_logging
from fragcache.registry import Registry, set_registry

MODULES_HELP = "Module defining fragment variants and record classes (repeatable)"
APP_HELP = "ASGI application for internal sessions, as 'module:attribute'"


def load_object(path: str) -> Any:
    """Import ``module:attribute``."""
    module_name, _, attribute = path.partition(":")
    if not attribute:
        raise typer.BadParameter(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError as e:
        raise typer.BadParameter(f"{module_name} has no attribute {attribute!r}") from e


async def build_registry(modules: list[str], app_path: str | None = None) -> Registry:
    """Create the default registry on Redis, then load the application modules.

    Modules are imported after the registry is in place so their
    get_registry() calls receive it.
    """
    configure_logging(json_format=settings.log_json, level=settings.log_level)

    redis = await get_redis()
    registry = set_registry(
        Registry(
            cache=RedisCacheStore(redis),
            jobs=RedisJobQueue(max_retries=settings.job_max_retries),
        )
    )
    await registry.jobs.initialize()

    for module in modules:
        importlib.import_module(module)
    if app_path:
        registry.app = load_object(app_path)

    registry.install_all()
    return registry
