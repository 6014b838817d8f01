"""
SalesPulse Database Session Management

Async SQLAlchemy engine and session factory.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    pass


@asynccontextmanager
async def worker_session(database_url: str) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Short-lived engine for a single Celery task run.

    Workers call ``asyncio.run`` per task, so a pooled module-level engine
    would be bound to a dead event loop on the next run.
    """
    engine = create_async_engine(database_url)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()
