"""
Shared Database Engine - Singleton Pattern.

This module provides a SINGLE shared async database engine for the Job Store
and the Record Store. The durable store is the single source of truth for
all job and record state; everything the pipeline keeps in memory is
reconstructible from it (except the Payload Cache, see services.payload_cache).

Pool settings keep the footprint small: the pipeline only ever has a handful
of lanes touching the database concurrently.
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

# =============================================================================
# SINGLETON DATABASE ENGINE
# =============================================================================

_shared_engine: Optional[AsyncEngine] = None
_shared_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_shared_engine() -> AsyncEngine:
    """
    Get the shared SQLAlchemy async engine (Singleton).

    Connection Pool Settings:
    - pool_size=5, max_overflow=5: at most 10 connections
    - pool_timeout=30: serverless Postgres may need time to wake up
    - pool_recycle=1800: recycle connections every 30 minutes
    - pool_pre_ping=True: check connection health before use

    Returns:
        SQLAlchemy AsyncEngine instance
    """
    global _shared_engine

    if _shared_engine is None:
        url = settings.postgres_url
        try:
            if url.startswith("sqlite"):
                _shared_engine = create_async_engine(url, echo=False)
            else:
                _shared_engine = create_async_engine(
                    url,
                    echo=False,
                    pool_pre_ping=True,
                    pool_size=5,
                    max_overflow=5,
                    pool_timeout=30,
                    pool_recycle=1800,
                )
            logger.info(f"Shared database engine created ({url.split('://', 1)[0]})")
        except Exception as e:
            logger.error(f"Failed to create shared database engine: {e}")
            raise

    return _shared_engine


def get_shared_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get the shared async session factory (Singleton).

    Sessions are created with expire_on_commit=False so ORM rows can be
    converted to plain dataclasses after the transaction closes.
    """
    global _shared_session_factory

    if _shared_session_factory is None:
        engine = get_shared_engine()
        _shared_session_factory = async_sessionmaker(engine, expire_on_commit=False)
        logger.info("Shared session factory created")

    return _shared_session_factory


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create pipeline tables if they don't exist.

    Production deployments use Alembic; this is for local runs and tests.
    """
    from app.models.database import Base
    # Register ORM classes on Base.metadata
    import app.models.data_record  # noqa: F401
    import app.models.ingestion_job  # noqa: F401

    engine = engine or get_shared_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ingestion tables created/verified")


async def test_connection() -> bool:
    """
    Test database connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        session_factory = get_shared_session_factory()
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False


async def close_shared_engine() -> None:
    """
    Close the shared engine and release all connections.

    Call this during application shutdown.
    """
    global _shared_engine, _shared_session_factory

    if _shared_engine is not None:
        await _shared_engine.dispose()
        _shared_engine = None
        _shared_session_factory = None
        logger.info("Shared database engine closed")
