"""Async engine and session factory for the chat log tables."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from narrative_tracker.config import get_settings
from narrative_tracker.models import Base

settings = get_settings()


def engine_options(url: str) -> dict:
    # Pre-ping only matters for pooled server connections
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True}


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

SessionFactory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def init_db() -> None:
    """Create missing tables. Changes to existing tables go through alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """FastAPI dependency: one session per request."""
    async with SessionFactory() as session:
        yield session
