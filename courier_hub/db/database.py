"""
Database engine, sessions and declarative base

The API process shares one engine. Celery tasks build a short-lived engine
per task because every task runs inside its own event loop.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from courier_hub.core.config import settings
from courier_hub.core.logging import get_logger

logger = get_logger(__name__)

# Stable constraint names so migrations can refer to them
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def _engine_kwargs(url: str, *, pool_size: int | None = None) -> dict[str, Any]:
    """Engine options for ``url``; SQLite drivers take no pool sizing."""
    kwargs: dict[str, Any] = {"echo": settings.DEBUG}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs
    kwargs["pool_pre_ping"] = True
    if pool_size is not None:
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = pool_size * 2
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base(metadata=MetaData(naming_convention=NAMING_CONVENTION))


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_models() -> None:
    """Create missing tables for every registered model"""
    import courier_hub.db.models  # noqa: F401  registers tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized", extra_data={
        "tables": sorted(Base.metadata.tables),
    })


async def ping_database() -> None:
    """Run a trivial query; raises when the database is unreachable"""
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


@asynccontextmanager
async def get_task_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for a Celery task, bound to an engine owned by the task's loop.

    Reusing the module-level engine from a worker fails with "attached to a
    different loop" once the pool holds connections from an earlier task.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        **_engine_kwargs(settings.DATABASE_URL, pool_size=settings.TASK_DB_POOL_SIZE),
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
