"""Database module with async SQLAlchemy engine and session management."""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import get_settings

settings = get_settings()

# SQLAlchemy base for models
Base = declarative_base()


def build_engine(db_url: str) -> AsyncEngine:
    """Create the async engine, applying pool and timeout options for PostgreSQL."""
    if db_url.startswith("postgresql"):
        return create_async_engine(
            db_url,
            echo=settings.debug,
            pool_size=10,
            max_overflow=20,
            connect_args={"command_timeout": settings.db_command_timeout},
        )
    return create_async_engine(db_url, echo=settings.debug)


# Async engine
async_engine = build_engine(settings.db_url)

# Async session maker
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_all(engine: AsyncEngine = async_engine) -> None:
    """Create all tables in the database."""
    # Models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


