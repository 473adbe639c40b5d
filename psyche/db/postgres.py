"""API-process engine. Stores take the session factory, never a single session."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from psyche.core.config import settings

engine = create_async_engine(
    settings.postgres_url,
    echo=False,
    pool_size=10,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
