"""
ratelimit — Identity-keyed fixed-window request limiting.

Modules:
    limiter — RateLimiter policy (check / record / acquire / enforce)
    stores  — Atomic per-key counter stores (in-memory, Redis)
"""

from backend.hazardwatch.core.cache import get_redis
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.ratelimit.limiter import RateLimitDecision, RateLimiter
from backend.hazardwatch.ratelimit.stores import (
    InMemoryRateLimitStore,
    RateLimitState,
    RateLimitStore,
    RedisRateLimitStore,
)


def build_rate_limit_store() -> RateLimitStore:
    """Create the store selected by RATE_LIMIT_BACKEND."""
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        return RedisRateLimitStore(get_redis())
    return InMemoryRateLimitStore()


__all__ = [
    "RateLimitDecision",
    "RateLimiter",
    "RateLimitState",
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
    "build_rate_limit_store",
]
