"""Observability module for fragcache.

Provides structured logging with replay context and Prometheus metrics.
"""

from fragcache.observability.logging import (
    LogContext,
    configure_logging,
    job_id_var,
    queue_var,
    user_type_var,
)
from fragcache.observability.metrics import get_metrics, metrics_registry

__all__ = [
    # Logging
    "configure_logging",
    "LogContext",
    "user_type_var",
    "queue_var",
    "job_id_var",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
