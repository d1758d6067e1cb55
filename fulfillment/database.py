"""
Database Connection Module
Handles the relational store using the SQLAlchemy async engine.

PostgreSQL (psycopg async) in deployment, SQLite (aiosqlite) for tests.
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from fulfillment.core.config import get_settings

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False, pooled: bool = True) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Pool sizing only applies to server databases; SQLite and per-task
    engines (Celery workers run one event loop per task) use NullPool.
    """
    if database_url.startswith("sqlite") or not pooled:
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,  # Connection pool size
        max_overflow=10,  # Extra connections when pool is full
        pool_pre_ping=True,
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; objects stay readable after commit."""
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


_settings = get_settings()

# Create async engine
engine = make_engine(_settings.database_url, echo=_settings.sql_echo)

# Session factory - creates new database sessions
async_session_maker = make_session_factory(engine)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def init_db(bind: AsyncEngine = None):
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Import models so they register on Base.metadata
    from fulfillment import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created successfully")
