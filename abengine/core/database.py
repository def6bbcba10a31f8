from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from abengine.core.config import settings


def build_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    return create_async_engine(url or settings.DATABASE_URL, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    from abengine.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
