"""
Async SQLAlchemy session factory for PostgreSQL.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import config
from database.models import Base

engine = create_async_engine(
    config.database_url,
    echo=False,
    pool_size=10,
    max_overflow=20,
    pool_recycle=3600,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create any missing tables (development / tests; production uses migrations)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
