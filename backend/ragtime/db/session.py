"""
Database engine and session factory.

Nothing is created at import time. ragtime.main builds one engine and one
session factory inside the FastAPI lifespan and hands the factory to the
metadata store and the pgvector store:

    engine          = create_engine(settings)
    session_factory = create_session_factory(engine)
    ...
    await engine.dispose()          # on shutdown

Timeouts:
  asyncpg `timeout`          : connection establishment
  asyncpg `command_timeout`  : every statement
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ragtime.core.config import Settings

logger = logging.getLogger(__name__)


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,
        connect_args={
            "timeout":         settings.db_connect_timeout,
            "command_timeout": settings.db_command_timeout,
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by the /health/ready endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except (SQLAlchemyError, OSError) as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
