# backend/safaridb/apps/accounts/rate_limit.py
"""
Per-identifier token bucket for login attempts.

Each attempt consumes one token from the bucket of its identifier. Buckets
refill `bucket_refill_rate` tokens every full `bucket_refill_window`, capped at
`bucket_capacity`. The policy is read on every call, so toggling
`loginAttempts.enabled` or changing the bucket sizes applies immediately.

Buckets live in process memory only. A restart grants every identifier a fresh
allowance, and several API instances each keep their own buckets.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict

from .policy import PolicyProvider, SecurityPolicy

logger = logging.getLogger(__name__)

try:
    DEFAULT_MAX_BUCKETS = int(os.getenv("SECURITY_RATE_LIMIT_MAX_BUCKETS", "10000"))
except ValueError:
    DEFAULT_MAX_BUCKETS = 10000


def normalise_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


@dataclass
class RateLimitBucket:
    capacity: int
    tokens: float
    refill_rate: int
    refill_window: float  # seconds
    last_refill_at: float  # clock seconds
    evicted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def full(cls, policy: SecurityPolicy, now: float) -> "RateLimitBucket":
        return cls(
            capacity=policy.bucket_capacity,
            tokens=float(policy.bucket_capacity),
            refill_rate=policy.bucket_refill_rate,
            refill_window=policy.bucket_refill_window.total_seconds(),
            last_refill_at=now,
        )

    def apply_policy(self, policy: SecurityPolicy) -> None:
        self.capacity = policy.bucket_capacity
        self.refill_rate = policy.bucket_refill_rate
        self.refill_window = policy.bucket_refill_window.total_seconds()
        self.tokens = min(self.tokens, float(self.capacity))

    def _pending_refill(self, now: float) -> tuple[int, float]:
        """Return (whole windows elapsed, tokens those windows add)."""
        if self.refill_window <= 0:
            return 0, 0.0
        periods = int((now - self.last_refill_at) // self.refill_window)
        if periods <= 0:
            return 0, 0.0
        return periods, float(periods * self.refill_rate)

    def refill(self, now: float) -> None:
        periods, added = self._pending_refill(now)
        if periods == 0:
            return
        self.tokens = min(float(self.capacity), self.tokens + added)
        self.last_refill_at += periods * self.refill_window

    def try_consume(self, now: float, tokens: int = 1) -> bool:
        self.refill(now)
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def is_idle(self, now: float) -> bool:
        """True when the bucket is (or would be, after refilling) full."""
        _, added = self._pending_refill(now)
        return self.tokens + added >= self.capacity


class LoginRateLimiter:
    """
    Process-wide limiter. Thread safe: the bucket map is guarded by one lock,
    each bucket's consume by its own lock.
    """

    def __init__(
        self,
        policy_provider: PolicyProvider,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
    ) -> None:
        self._policy_provider = policy_provider
        self._clock = clock
        self._max_buckets = max_buckets
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()

    def allow(self, identifier: str) -> bool:
        """
        Consume one token for `identifier`. Returns False when the bucket is
        empty.

        Fails open: any internal error is logged and the attempt is allowed.
        """
        try:
            policy = self._policy_provider.current()
            if not policy.rate_limit_policy_enabled:
                return True

            key = normalise_identifier(identifier)
            while True:
                now = self._clock()
                bucket = self._get_or_create(key, policy, now)
                with bucket.lock:
                    if bucket.evicted:
                        continue
                    bucket.apply_policy(policy)
                    allowed = bucket.try_consume(now)
                break

            if not allowed:
                logger.warning("Login rate limit exceeded for identifier: %s", key)
            return allowed
        except Exception:
            logger.exception(
                "Error checking login rate limit; allowing attempt",
                extra={"identifier": identifier},
            )
            return True

    def _get_or_create(self, key: str, policy: SecurityPolicy, now: float) -> RateLimitBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None:
                return bucket
            if len(self._buckets) >= self._max_buckets:
                self._evict_idle_locked(now)
                if len(self._buckets) >= self._max_buckets:
                    logger.warning(
                        "Login rate limit map is full with no idle buckets",
                        extra={"buckets": len(self._buckets), "max_buckets": self._max_buckets},
                    )
            bucket = RateLimitBucket.full(policy, now)
            self._buckets[key] = bucket
            logger.debug(
                "Created rate limit bucket for identifier: %s (capacity=%s, refill=%s/%ss)",
                key,
                bucket.capacity,
                bucket.refill_rate,
                bucket.refill_window,
            )
            return bucket

    def _evict_idle_locked(self, now: float) -> int:
        evicted = 0
        for key, bucket in list(self._buckets.items()):
            if not bucket.lock.acquire(blocking=False):
                continue
            try:
                if bucket.is_idle(now):
                    bucket.evicted = True
                    del self._buckets[key]
                    evicted += 1
            finally:
                bucket.lock.release()
        return evicted

    def evict_idle(self) -> int:
        """Drop buckets that have refilled to capacity. Returns how many."""
        with self._lock:
            return self._evict_idle_locked(self._clock())

    def stats(self) -> dict:
        now = self._clock()
        throttled = 0
        with self._lock:
            buckets = list(self._buckets.values())
        for bucket in buckets:
            with bucket.lock:
                _, added = bucket._pending_refill(now)
                if min(float(bucket.capacity), bucket.tokens + added) < 1:
                    throttled += 1
        return {
            "buckets": len(buckets),
            "throttled": throttled,
            "max_buckets": self._max_buckets,
        }

    def clear(self) -> None:
        with self._lock:
            for bucket in self._buckets.values():
                bucket.evicted = True
            self._buckets.clear()
