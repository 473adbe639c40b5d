"""Bounded retry with exponential backoff and jitter.

Backoff strategy:
  delay = min(base * 2^attempt, max_delay) + jitter
  jitter = random(0, base * 0.5)

Every attempt is raced against ``timeout_seconds``; a timed-out attempt is a
TransientModelError. Only transient errors are retried. Anything else
(PermanentModelError, validation errors, bugs) propagates on the first raise.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from psyche.core.exceptions import TransientModelError
from psyche.gateway.types import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All attempts failed with transient errors, or the caller stopped the loop."""

    def __init__(self, last_error: Exception, attempts: int, aborted: bool = False):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts
        self.aborted = aborted  # stopped early by the on_failure hook


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with jitter for a 0-based attempt number."""
    exponential = min(base_delay * (2**attempt), max_delay)
    jitter = (rng or random).uniform(0, base_delay * 0.5)
    return exponential + jitter


class RetryPolicy:
    """Runs an async operation with bounded retries.

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=3, timeout_seconds=10))
        result = await policy.execute(lambda: invoker.invoke(...), on_failure=hook)

    ``on_failure(exc)`` is called after every failed transient attempt and
    returns False to stop retrying (e.g. the circuit breaker just opened).
    """

    def __init__(
        self,
        config: RetryConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config
        self._sleep = sleep
        self._rng = rng

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        on_failure: Callable[[Exception], bool] | None = None,
        label: str = "",
    ) -> T:
        max_attempts = max(1, self.config.max_attempts)
        last_error: Exception | None = None

        for attempt in range(max_attempts):
            try:
                return await asyncio.wait_for(operation(), timeout=self.config.timeout_seconds)
            except asyncio.TimeoutError:
                last_error = TransientModelError(f"Timeout after {self.config.timeout_seconds}s")
            except TransientModelError as e:
                last_error = e

            keep_going = on_failure(last_error) if on_failure else True
            if not keep_going:
                logger.warning("Retry loop for %s stopped after attempt %d: %s", label, attempt + 1, last_error)
                raise RetryExhaustedError(last_error, attempts=attempt + 1, aborted=True)

            if attempt + 1 >= max_attempts:
                break

            delay = calculate_backoff(attempt, self.config.base_delay, self.config.max_delay, self._rng)
            logger.info(
                "Retry %d/%d for %s in %.1fs (%s)",
                attempt + 1,
                max_attempts - 1,
                label,
                delay,
                last_error,
            )
            await self._sleep(delay)

        logger.warning("Retries exhausted for %s after %d attempts: %s", label, max_attempts, last_error)
        raise RetryExhaustedError(last_error, attempts=max_attempts)
