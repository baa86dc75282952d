"""
limiter.py — Fixed-window, identity-keyed request limiter.

Gates flows that issue a time-boxed secret (e.g. a sign-in link).

═══════════════════════════════════════════════════════════════════════════
POLICY
═══════════════════════════════════════════════════════════════════════════

    Window 15 min, cap 3 (RATE_LIMIT_WINDOW_SECONDS / RATE_LIMIT_MAX_REQUESTS)

    t=0:00   request 1   allowed     window_start = 0:00, count → 1
    t=0:05   request 2   allowed     count → 2
    t=0:06   request 3   allowed     count → 3
    t=0:10   request 4   DENIED      reset_at = 0:15
    t=0:15   request 5   allowed     new window, count → 1

Usage styles:

    check() + record()    advisory read, then count once the action ran
                          (not atomic; concurrent callers can over-admit)
    acquire()             check and record in one atomic store update
    reserve() / release() atomic acquire that raises when denied; release
                          hands the slot back if the action then fails

Identities are trimmed, lower-cased and prefixed ("sign-in:") before they
reach the store. There is no global cap.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.errors import RateLimitExceeded
from backend.hazardwatch.ratelimit.stores import (
    InMemoryRateLimitStore,
    RateLimitState,
    RateLimitStore,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reset_at: Optional[datetime] = None
    remaining: int = 0

    def retry_after_seconds(self, now: datetime) -> int:
        if self.reset_at is None:
            return 0
        return max(1, math.ceil((self.reset_at - now).total_seconds()))


class RateLimiter:
    """
    Parameters
    ----------
    store : RateLimitStore, optional
        Defaults to a process-local in-memory store.
    max_requests : int
        Requests allowed per identity per window.
    window : timedelta
        Fixed window length, measured from the first request in it.
    clock : callable
        Returns the current aware datetime; injectable for tests.
    key_prefix : str
        Namespace for store keys.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        max_requests: int = 3,
        window: timedelta = timedelta(minutes=15),
        clock: Clock = _utcnow,
        key_prefix: str = "sign-in:",
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.store = store or InMemoryRateLimitStore()
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(cls, store: Optional[RateLimitStore] = None) -> "RateLimiter":
        return cls(
            store,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window=timedelta(seconds=settings.RATE_LIMIT_WINDOW_SECONDS),
            key_prefix=settings.RATE_LIMIT_KEY_PREFIX,
        )

    @property
    def _ttl_seconds(self) -> int:
        return int(math.ceil(self.window.total_seconds()))

    def key_for(self, identity: str) -> str:
        return f"{self.key_prefix}{identity.strip().lower()}"

    # ── Pure decision helpers ──

    def _decide(self, state: Optional[RateLimitState], now: datetime) -> RateLimitDecision:
        if state is None or state.is_expired(now, self.window):
            return RateLimitDecision(allowed=True, remaining=self.max_requests)
        if state.count < self.max_requests:
            return RateLimitDecision(
                allowed=True,
                reset_at=state.reset_at(self.window),
                remaining=self.max_requests - state.count,
            )
        return RateLimitDecision(allowed=False, reset_at=state.reset_at(self.window))

    def _increment(self, state: Optional[RateLimitState], now: datetime) -> RateLimitState:
        if state is None or state.is_expired(now, self.window):
            return RateLimitState(window_start=now, count=1)
        return RateLimitState(window_start=state.window_start, count=state.count + 1)

    # ── Public API ──

    async def check(self, identity: str) -> RateLimitDecision:
        """Would a request for ``identity`` be allowed now? Does not count it."""
        state = await self.store.get(self.key_for(identity))
        return self._decide(state, self.clock())

    async def record(self, identity: str) -> RateLimitState:
        """Count one performed request for ``identity``."""
        now = self.clock()

        def mutate(state: Optional[RateLimitState]) -> Tuple[RateLimitState, RateLimitState]:
            new_state = self._increment(state, now)
            return new_state, new_state

        return await self.store.update(self.key_for(identity), mutate, self._ttl_seconds)

    async def acquire(self, identity: str) -> RateLimitDecision:
        """Check and, if allowed, record in one atomic step."""
        now = self.clock()

        def mutate(
            state: Optional[RateLimitState],
        ) -> Tuple[Optional[RateLimitState], RateLimitDecision]:
            decision = self._decide(state, now)
            if not decision.allowed:
                return None, decision
            new_state = self._increment(state, now)
            return new_state, RateLimitDecision(
                allowed=True,
                reset_at=new_state.reset_at(self.window),
                remaining=self.max_requests - new_state.count,
            )

        decision = await self.store.update(self.key_for(identity), mutate, self._ttl_seconds)
        if not decision.allowed:
            logger.info("Rate limit reached for %s", self.key_prefix.rstrip(":"))
        return decision

    async def reserve(self, identity: str) -> RateLimitDecision:
        """
        ``acquire`` that raises when denied.

        Use it to take a slot before the gated action runs; hand the slot
        back with ``release`` if the action fails.

        Raises
        ------
        RateLimitExceeded
            Carries ``reset_at`` and ``retry_after`` (seconds).
        """
        decision = await self.acquire(identity)
        if not decision.allowed:
            raise self._exceeded(decision)
        return decision

    async def release(self, identity: str, reservation: RateLimitDecision) -> bool:
        """
        Give back a slot taken by ``reserve`` / ``acquire``.

        Only decrements while the reservation's window is still current;
        returns False when there was nothing to give back.
        """

        def mutate(state: Optional[RateLimitState]) -> Tuple[Optional[RateLimitState], bool]:
            if (
                state is None
                or state.count < 1
                or state.reset_at(self.window) != reservation.reset_at
            ):
                return None, False
            return RateLimitState(window_start=state.window_start, count=state.count - 1), True

        return await self.store.update(self.key_for(identity), mutate, self._ttl_seconds)

    def _exceeded(self, decision: RateLimitDecision) -> RateLimitExceeded:
        return RateLimitExceeded(
            "Too many requests. Please try again later.",
            retry_after=decision.retry_after_seconds(self.clock()),
            reset_at=decision.reset_at,
        )

    async def enforce(self, identity: str) -> RateLimitDecision:
        """
        Like ``check`` but raises when denied.

        Raises
        ------
        RateLimitExceeded
            Carries ``reset_at`` and ``retry_after`` (seconds).
        """
        decision = await self.check(identity)
        if not decision.allowed:
            raise self._exceeded(decision)
        return decision
