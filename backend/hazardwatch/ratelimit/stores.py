"""
stores.py — Durable counter stores for the rate limiter.

A store keeps one RateLimitState per key and offers a single atomic
read-modify-write:

    result = await store.update(key, mutate, ttl_seconds)

``mutate(current_state_or_None)`` returns ``(new_state_or_None, result)``.
A None new state means "nothing to write". Whatever mutate decides is
applied as one step per key, so two concurrent requests for the same
identity can never both observe a stale count.

    Store                     Atomicity
    ─────────────────────     ─────────────────────────────────────────
    InMemoryRateLimitStore    one lock, no await inside (single process)
    RedisRateLimitStore       WATCH / MULTI / EXEC, retried on conflict
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from backend.hazardwatch.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimitState:
    """Counter for one identity within one fixed window."""
    window_start: datetime
    count: int = 0

    def reset_at(self, window: timedelta) -> datetime:
        return self.window_start + window

    def is_expired(self, now: datetime, window: timedelta) -> bool:
        return now >= self.reset_at(window)


Mutator = Callable[[Optional[RateLimitState]], Tuple[Optional[RateLimitState], T]]


class RateLimitStore(Protocol):
    async def get(self, key: str) -> Optional[RateLimitState]:
        ...

    async def update(self, key: str, mutate: Mutator, ttl_seconds: int) -> T:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryRateLimitStore:
    """
    Process-local store.

    Each write stamps the key with an expiry ``ttl_seconds`` ahead, the
    same way the Redis store sets EXPIRE. Expired keys read as missing
    and are dropped by a sweep that runs at most once per
    ``sweep_interval`` seconds, so idle identities do not accumulate.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        self._states: Dict[str, RateLimitState] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    @property
    def size(self) -> int:
        return len(self._states)

    def _live_state(self, key: str, now: float) -> Optional[RateLimitState]:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= now:
            self._states.pop(key, None)
            self._expires_at.pop(key, None)
            return None
        return self._states.get(key)

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        expired = [k for k, at in self._expires_at.items() if at <= now]
        for key in expired:
            self._states.pop(key, None)
            self._expires_at.pop(key, None)
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug("Evicted %d expired rate-limit keys", len(expired))

    async def get(self, key: str) -> Optional[RateLimitState]:
        with self._lock:
            return self._live_state(key, self._clock())

    async def update(self, key: str, mutate: Mutator, ttl_seconds: int) -> T:
        # Read, mutate and write without awaiting, under one lock.
        with self._lock:
            now = self._clock()
            new_state, result = mutate(self._live_state(key, now))
            if new_state is not None:
                self._states[key] = new_state
                self._expires_at[key] = now + ttl_seconds
            self._sweep(now)
            return result

    async def ping(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._states.clear()
            self._expires_at.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Redis
# ═══════════════════════════════════════════════════════════════════════════

def _encode(state: RateLimitState) -> Dict[str, str]:
    return {
        "window_start": repr(state.window_start.timestamp()),
        "count": str(state.count),
    }


def _decode(raw: Dict[str, str]) -> Optional[RateLimitState]:
    if not raw:
        return None
    return RateLimitState(
        window_start=datetime.fromtimestamp(float(raw["window_start"]), tz=timezone.utc),
        count=int(raw["count"]),
    )


class RedisRateLimitStore:
    """
    Redis hash per key with optimistic locking.

    The key expires ``ttl_seconds`` after its last write, so idle
    identities cost nothing.
    """

    def __init__(self, client: aioredis.Redis, *, max_retries: int = 10):
        self.client = client
        self.max_retries = max_retries

    async def get(self, key: str) -> Optional[RateLimitState]:
        return _decode(await self.client.hgetall(key))

    async def update(self, key: str, mutate: Mutator, ttl_seconds: int) -> T:
        for attempt in range(1, self.max_retries + 1):
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    new_state, result = mutate(_decode(await pipe.hgetall(key)))
                    if new_state is None:
                        await pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.hset(key, mapping=_encode(new_state))
                    pipe.expire(key, ttl_seconds)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug("Rate-limit key %s changed concurrently (attempt %d)", key, attempt)
                    continue

        raise ExternalServiceError(
            "redis", f"rate-limit update for {key} kept conflicting", attempts=self.max_retries,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning("Rate-limit store unavailable: %s", e)
            return False
