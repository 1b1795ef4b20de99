"""
Database Infrastructure
=======================

Async engine and session lifecycle for PostgreSQL (asyncpg). SQLite
(aiosqlite) URLs are accepted for local runs and tests.

Request handlers get a session per request through ``get_session``; the
scheduler and startup code use ``get_session_context``. Both commit on a
normal exit and roll back when the body raises.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from crm_tickets.config import settings
from crm_tickets.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by every ticket-service table."""


class Database:
    """Holds the engine and session factory once ``init_database`` ran."""

    def __init__(self) -> None:
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def initialized(self) -> bool:
        return self.engine is not None

    def connect(self, url: str) -> AsyncEngine:
        if url.startswith("sqlite"):
            # SQLite has no server-side pool to size
            engine = create_async_engine(url, echo=settings.debug)
        else:
            # asyncpg takes ssl= where libpq URLs carry sslmode=
            engine = create_async_engine(
                url.replace("sslmode=", "ssl="),
                echo=settings.debug,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
            )
        self.engine = engine
        self.session_maker = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return engine

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_maker = None

    def new_session(self) -> AsyncSession:
        if self.session_maker is None:
            raise RuntimeError("Database not initialized. Call init_database() first.")
        return self.session_maker()


db = Database()


def init_database(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the engine from ``database_url`` or the configured URL."""
    engine = db.connect(database_url or settings.database_url)
    logger.info("Database engine created", extra={"dialect": engine.dialect.name})
    return engine


async def close_database() -> None:
    await db.dispose()


@asynccontextmanager
async def get_session_context() -> AsyncIterator[AsyncSession]:
    """
    Transactional session scope.

    Usage:
        async with get_session_context() as session:
            ...
    """
    async with db.new_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one transactional session per request."""
    async with get_session_context() as session:
        yield session


async def create_tables() -> None:
    """Create missing tables; deployments with migrations skip this."""
    if db.engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping() -> str:
    """Report database reachability for the health endpoint."""
    if db.engine is None:
        return "not_initialized"
    try:
        async with db.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database ping failed", extra={"error": str(e)})
        return "unavailable"
    return "ok"
