"""
Relational store client and session management.
Psychology: Single responsibility - owns the engine and hands out sessions.
Intention: Constructed once at startup and passed by reference, never a module-level global engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


class DatabaseUnavailable(RuntimeError):
    """Raised at startup when the store does not answer"""


class Database:
    """Async engine plus session factory"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "Database":
        return cls(create_async_engine(url, pool_pre_ping=True, **engine_kwargs))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()


def get_database(request: Request) -> Database:
    return request.app.state.services.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Get an asynchronous database session.
    Psychology: Resource management - ensures sessions are properly closed.
    Intention: Provide clean session lifecycle management.
    """
    database = get_database(request)
    async with database.session() as session:
        yield session
