"""Resilience helpers: quick retries, soft-failing steps, handler health."""

from .fallback import with_default
from .health import HealthMonitor
from .retry import retry_with_backoff

__all__ = [
    "retry_with_backoff",
    "with_default",
    "HealthMonitor",
]
