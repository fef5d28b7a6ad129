"""
Engine, session factories and schema bootstrap.

The API process shares one engine. Celery tasks run each sweep in a fresh
event loop and therefore build a short-lived engine of their own.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()


def engine_options(url: str, **pool: Any) -> dict[str, Any]:
    """SQLite (local runs) takes no pool sizing; everything else gets pre-ping and pool options"""
    if make_url(url).get_backend_name() == "sqlite":
        return {"echo": settings.DEBUG}
    return {"echo": settings.DEBUG, "pool_pre_ping": True, **pool}


def _session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # snapshots stay readable after commit, the services return ORM rows
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))
AsyncSessionLocal = _session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_models() -> None:
    """Create missing tables for every registered model"""
    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Session on a task-local engine, disposed when the task's sweep ends"""
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        **engine_options(settings.DATABASE_URL, pool_size=2, max_overflow=3),
    )
    try:
        async with _session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
