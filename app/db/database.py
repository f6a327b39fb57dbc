"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


def enum_values(enum_cls) -> list[str]:
    """values_callable ל-SQLEnum - שומר 'pending' במקום 'PENDING'"""
    return [e.value for e in enum_cls]


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Create a fresh database session for Celery tasks.

    A new engine is bound to the current event loop, avoiding the "attached to
    a different loop" error when module-level engines are reused across the
    loops Celery workers create.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
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
