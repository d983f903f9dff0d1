"""Database engine and session factory for the order store."""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from settings import DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_session_factory(url: str):
    """Build an engine and session factory for a non-default database URL."""
    other_engine = create_async_engine(url, echo=False)
    return other_engine, sessionmaker(other_engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(target_engine=None):
    """Create the orders tables and indexes if they do not exist."""
    from .models import Base
    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Dispose of the default engine's connection pool."""
    await engine.dispose()
