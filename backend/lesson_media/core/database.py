"""Async database engine, session factory and declarative base."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from lesson_media.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_worker_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an engine for a Celery worker task.

    Each task runs its own event loop, so pooled connections cannot be
    shared between tasks.
    """
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=settings.DEBUG,
        poolclass=NullPool,
    )


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to the given engine."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def worker_session_maker(
    database_url: Optional[str] = None,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory on a throwaway engine, disposed on exit."""
    engine = create_worker_engine(database_url)
    try:
        yield create_session_maker(engine)
    finally:
        await engine.dispose()
