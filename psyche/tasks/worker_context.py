"""Async bridge for Celery workers.

Each task runs in a fresh event loop with its own engine; the module-level
engine in psyche.db.postgres is bound to the API's loop. Breaker and bucket
registries are process-wide so their state survives between tasks.
"""

import asyncio

from psyche.core.config import settings
from psyche.gateway.circuit_breaker import CircuitBreakerRegistry
from psyche.gateway.token_bucket import TokenBucketRegistry
from psyche.gateway.types import DEFAULT_OPERATION_POLICIES

worker_buckets = TokenBucketRegistry({name: p.bucket for name, p in DEFAULT_OPERATION_POLICIES.items()})
worker_breakers = CircuitBreakerRegistry({name: p.breaker for name, p in DEFAULT_OPERATION_POLICIES.items()})


def run_async(coro):
    """Run an async coroutine from sync Celery task context."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def make_session_factory():
    """Create a fresh async engine + session factory for the current loop."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    engine = create_async_engine(
        settings.postgres_url,
        echo=False,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine
