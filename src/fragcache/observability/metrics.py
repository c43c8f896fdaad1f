"""Prometheus metrics for fragcache.

Usage:
    from fragcache.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.fragments_touched_total.labels(variant="Page").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest

from fragcache.config import settings

logger = logging.getLogger(__name__)


class NoOpMetric:
    """Stand-in metric used when metrics are disabled."""

    def labels(self, **kwargs: Any) -> "NoOpMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def observe(self, amount: float) -> None:
        pass


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    fragments_touched_total: Any = None
    fragments_destroyed_total: Any = None
    requests_queued_total: Any = None
    requests_sent_total: Any = None
    replay_duration_seconds: Any = None

    _initialized: bool = field(default=False, repr=False)
    _registry: CollectorRegistry | None = field(default=None, repr=False)

    def initialize(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            noop = NoOpMetric()
            self.fragments_touched_total = noop
            self.fragments_destroyed_total = noop
            self.requests_queued_total = noop
            self.requests_sent_total = noop
            self.replay_duration_seconds = noop
            self._initialized = True
            return

        self._registry = registry or REGISTRY

        self.fragments_touched_total = Counter(
            "fragcache_fragments_touched_total",
            "Fragments touched",
            ["variant"],
            registry=self._registry,
        )
        self.fragments_destroyed_total = Counter(
            "fragcache_fragments_destroyed_total",
            "Fragments destroyed",
            ["variant"],
            registry=self._registry,
        )
        self.requests_queued_total = Counter(
            "fragcache_requests_queued_total",
            "Requests added to a request queue",
            ["user_type"],
            registry=self._registry,
        )
        self.requests_sent_total = Counter(
            "fragcache_requests_sent_total",
            "Requests replayed through a session",
            ["user_type", "target", "status"],
            registry=self._registry,
        )
        self.replay_duration_seconds = Histogram(
            "fragcache_replay_duration_seconds",
            "Time spent replaying one request",
            ["user_type"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self._registry,
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry
