"""Database engine and session management."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from demand_engine.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping="postgresql" in settings.database_url,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """Yield a session that is closed when the request finishes."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create tables that do not exist yet."""
    from demand_engine.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
