"""
Database Management and Configuration.

This module sets up the asynchronous database connection for the Audio Feed
API. It uses SQLAlchemy's asyncio extension with SQLModel table metadata.

Key Components:
- `build_engine`: Creates an async engine for a URL. SQLite URLs (development
  and tests) go through `aiosqlite`; PostgreSQL URLs (production) go through
  `asyncpg` with a bounded connection pool.
- `engine` / `async_session`: The process-wide engine for the configured
  `DATABASE_URL` and its session factory. Services receive a session factory
  in their constructor, so tests can hand them one bound to a throwaway
  database instead.
- `create_db_and_tables`: Startup hook that creates every table registered in
  `SQLModel.metadata`.
- `get_database_info`: Diagnostic snapshot for the monitoring endpoints.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool
from sqlmodel import SQLModel

import core.models  # noqa: F401  registers table metadata
from core.config import get_settings

logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().database_url


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine configured for the database type in the URL"""
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            # sqlite3 waits up to `timeout` seconds on a locked database
            connect_args={"check_same_thread": False, "timeout": 15},
            echo=echo,
            poolclass=AsyncAdaptedQueuePool,
        )
    return create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Validate connections before use
        echo=echo,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(DATABASE_URL)
async_session = build_session_factory(engine)


async def create_db_and_tables(bind: Optional[AsyncEngine] = None):
    """
    Initialize the database and create all tables.
    Called during application startup.
    """
    bind = bind or engine
    try:
        async with bind.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Audio feed database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create audio feed database tables: {e}")
        raise


def _database_type(database_url: str) -> str:
    return "postgresql" if "postgresql" in database_url else "sqlite"


async def get_database_info(
    session_factory: Optional[async_sessionmaker] = None,
    bind: Optional[AsyncEngine] = None,
) -> Dict[str, Any]:
    """
    Get basic database information for health checks.
    """
    session_factory = session_factory or async_session
    bind = bind or engine
    database_url = str(bind.url)

    try:
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            connection_healthy = result.scalar() == 1
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        connection_healthy = False

    return {
        "database_url": database_url.split("@")[1]
        if "@" in database_url
        else "masked",  # Hide credentials
        "connection_healthy": connection_healthy,
        "database_type": _database_type(database_url),
        "engine_info": {
            "pool_size": getattr(bind.pool, "size", lambda: "unknown")(),
            "checked_out": getattr(bind.pool, "checkedout", lambda: "unknown")(),
        },
    }
