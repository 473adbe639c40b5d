"""Token Bucket rate limiter keyed by (principal, operation).

Each bucket accrues tokens continuously at ``refill_per_minute`` up to
``capacity``. Refill is lazy: it is computed from the timestamp delta on every
access, so no background timer is needed. A request charges ``cost`` tokens;
when the bucket cannot cover it the caller gets a ``retry_after`` hint:

  retry_after = ceil((cost - tokens) / refill_per_minute * 60)

Invariant: 0 <= tokens <= capacity after every operation.

A bucket that has refilled to capacity is indistinguishable from a new one, so
`acquire` sweeps such buckets out every `sweep_interval` seconds; the map only
holds principals that are actually being throttled or were recently active.

Thread-safe via a single threading.Lock (critical sections are tiny and never
await), so the registry can be shared by the API process and worker threads.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from psyche.gateway.types import BucketConfig

logger = logging.getLogger(__name__)


@dataclass
class _BucketState:
    """Mutable state of one bucket."""

    tokens: float
    capacity: float
    refill_per_minute: float
    last_refill_at: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill_at)
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed / 60.0 * self.refill_per_minute)
        self.last_refill_at = max(self.last_refill_at, now)


@dataclass
class AcquireResult:
    """Outcome of a single acquire() call."""

    allowed: bool
    remaining: float
    retry_after: int = 0  # seconds until `cost` tokens are available


class TokenBucketRegistry:
    """Registry of lazily created token buckets.

    Usage:
        buckets = TokenBucketRegistry({"psychographic_analysis": BucketConfig(60, 1)})

        result = buckets.acquire("user-42", "psychographic_analysis")
        if not result.allowed:
            # reject with result.retry_after
            ...
    """

    def __init__(
        self,
        configs: dict[str, BucketConfig] | None = None,
        default: BucketConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float | None = 300.0,
    ):
        self._configs = configs or {}
        self._default = default or BucketConfig()
        self._clock = clock
        self._buckets: dict[tuple[str, str], _BucketState] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def config_for(self, operation: str) -> BucketConfig:
        return self._configs.get(operation, self._default)

    def _get_bucket(self, principal: str, operation: str, now: float) -> _BucketState:
        key = (principal, operation)
        bucket = self._buckets.get(key)
        if bucket is None:
            config = self.config_for(operation)
            bucket = _BucketState(
                tokens=config.capacity,
                capacity=config.capacity,
                refill_per_minute=config.refill_per_minute,
                last_refill_at=now,
            )
            self._buckets[key] = bucket
        return bucket

    def _evict_refilled(self, now: float) -> None:
        """Drop buckets that would be full at `now`. Caller holds the lock."""
        self._last_sweep = now
        full = [
            key
            for key, b in self._buckets.items()
            if b.tokens + max(0.0, now - b.last_refill_at) / 60.0 * b.refill_per_minute >= b.capacity
        ]
        for key in full:
            del self._buckets[key]
        if full:
            logger.debug("Swept %d refilled token buckets, %d left", len(full), len(self._buckets))

    def acquire(self, principal: str, operation: str, cost: float | None = None) -> AcquireResult:
        """Charge `cost` tokens (default: the operation's configured cost)."""
        config = self.config_for(operation)
        cost = config.cost if cost is None else cost
        if cost <= 0:
            raise ValueError("Token cost must be positive")

        with self._lock:
            now = self._clock()
            if self._sweep_interval is not None and now - self._last_sweep >= self._sweep_interval:
                self._evict_refilled(now)
            bucket = self._get_bucket(principal, operation, now)
            bucket.refill(now)

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return AcquireResult(allowed=True, remaining=bucket.tokens)

            shortage = cost - bucket.tokens
            retry_after = max(1, math.ceil(shortage / bucket.refill_per_minute * 60))
            remaining = bucket.tokens

        logger.info(
            "Rate limited %s/%s: %.2f tokens left, retry after %ds",
            principal,
            operation,
            remaining,
            retry_after,
        )
        return AcquireResult(allowed=False, remaining=remaining, retry_after=retry_after)

    def status(self, principal: str, operation: str) -> dict:
        """Current bucket level. A bucket that was never touched reports full."""
        with self._lock:
            bucket = self._buckets.get((principal, operation))
            if bucket is None:
                config = self.config_for(operation)
                tokens, capacity, rate = config.capacity, config.capacity, config.refill_per_minute
            else:
                bucket.refill(self._clock())
                tokens, capacity, rate = bucket.tokens, bucket.capacity, bucket.refill_per_minute
        return {
            "principal": principal,
            "operation": operation,
            "tokens": round(tokens, 3),
            "capacity": capacity,
            "refill_per_minute": rate,
        }

    def all_status(self) -> list[dict]:
        with self._lock:
            keys = list(self._buckets)
        return [self.status(principal, operation) for principal, operation in keys]

    def reset(self, principal: str, operation: str | None = None) -> int:
        """Drop one bucket, or all buckets of a principal. Returns count removed."""
        with self._lock:
            if operation is not None:
                removed = 1 if self._buckets.pop((principal, operation), None) else 0
            else:
                keys = [k for k in self._buckets if k[0] == principal]
                for key in keys:
                    del self._buckets[key]
                removed = len(keys)
        if removed:
            logger.info("Reset %d token bucket(s) for %s", removed, principal)
        return removed

    def cleanup(self, max_idle_seconds: float = 3600.0) -> int:
        """Evict buckets not touched for `max_idle_seconds`. Returns count evicted."""
        with self._lock:
            cutoff = self._clock() - max_idle_seconds
            stale = [k for k, b in self._buckets.items() if b.last_refill_at < cutoff]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("Evicted %d idle token buckets", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)
