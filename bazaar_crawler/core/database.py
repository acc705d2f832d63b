from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from bazaar_crawler.config import settings


class Base(DeclarativeBase):
    pass


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": settings.DB_ECHO}
    if url.startswith("sqlite"):
        # SQLite doesn't support pool_size/max_overflow with StaticPool
        from sqlalchemy.pool import StaticPool

        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 2
        kwargs["pool_pre_ping"] = True
        kwargs["pool_recycle"] = 3600
    return kwargs


def create_session_factory(
    url: str | None = None,
) -> tuple[async_sessionmaker[AsyncSession], AsyncEngine]:
    """Create a fresh engine + session factory for one scan run.

    Each CLI invocation runs its own event loop, so the engine is built
    per run rather than at import time.
    """
    url = url or settings.DATABASE_URL
    engine = create_async_engine(url, **_engine_kwargs(url))
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    import bazaar_crawler.models  # noqa: F401  (registers mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
