# app/db/session.py
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.db.base import Base


def build_engine(db_url: str) -> AsyncEngine:
    """
    Create the async engine for the given database URL.

    SQLite files are opened per connection (NullPool) so the engine can be
    shared between the request handlers and the polling tasks without
    cross-loop connection reuse.
    """
    kwargs = {"echo": False, "future": True}
    if db_url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    return create_async_engine(db_url, **kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Create any missing tables for the current models.

    Typically you'd eventually replace this with Alembic migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def reset_db(engine: AsyncEngine) -> None:
    """
    TEST-ONLY: drop and recreate every table.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
