from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from callcoach.core.config import settings
from callcoach.db.base import Base


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine = engine) -> None:
    # Import models so their tables are registered on Base.metadata
    from callcoach.models import award, session  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
