"""Database connection management for PostgreSQL and Redis."""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from redis.asyncio import Redis
from typing import Optional
import logging

from .config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy Base for ORM models
Base = declarative_base()

# Global database connections
_pg_engine = None
_pg_session_maker = None
_redis_client = None


# ============================================================================
# PostgreSQL Connection Management
# ============================================================================

def get_postgres_engine():
    """
    Get or create the async engine for the authorization store.

    With PgBouncer (port 6432) the application pool stays small and PgBouncer
    multiplexes; a direct connection gets a larger pool. SQLite URLs (tests,
    local runs) use the driver defaults.
    """
    global _pg_engine
    if _pg_engine is None:
        url = settings.postgres_url
        if url.startswith("sqlite"):
            _pg_engine = create_async_engine(url, echo=settings.log_level == "DEBUG")
            logger.info("SQLite engine created for authorization store")
            return _pg_engine

        is_using_pgbouncer = settings.postgres_port == 6432 or settings.postgres_host == "pgbouncer"
        if is_using_pgbouncer:
            pool_size = 5
            max_overflow = 5
            logger.info("Using PgBouncer - configuring small application connection pool")
        else:
            pool_size = 10
            max_overflow = 20
            logger.info("Direct PostgreSQL connection - using standard connection pool")

        _pg_engine = create_async_engine(
            url,
            echo=settings.log_level == "DEBUG",
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=3600,
            pool_timeout=30,
        )
        logger.info(
            f"PostgreSQL engine created: {settings.postgres_host}:{settings.postgres_port} "
            f"(pool_size={pool_size}, max_overflow={max_overflow})"
        )
    return _pg_engine


def get_postgres_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create PostgreSQL session maker."""
    global _pg_session_maker
    if _pg_session_maker is None:
        engine = get_postgres_engine()
        _pg_session_maker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _pg_session_maker


async def close_postgres():
    """Close PostgreSQL connections."""
    global _pg_engine, _pg_session_maker
    if _pg_engine:
        await _pg_engine.dispose()
        _pg_engine = None
        _pg_session_maker = None
        logger.info("PostgreSQL connections closed")


# ============================================================================
# Redis Connection Management
# ============================================================================

def get_redis_client() -> Redis:
    """Get or create Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=50,
        )
        logger.info(f"Redis client created: {settings.redis_host}:{settings.redis_port}")
    return _redis_client


async def close_redis():
    """Close Redis connections."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis connections closed")


# ============================================================================
# Application Lifecycle Management
# ============================================================================

async def close_databases():
    """Close all database connections."""
    logger.info("Closing database connections...")
    await close_postgres()
    await close_redis()
    logger.info("All database connections closed")


async def create_tables(engine: Optional[AsyncEngine] = None):
    """Create all tables on ``engine`` (default: the configured store). Production uses migrations."""
    from . import db_models  # noqa: F401  registers models on Base

    engine = engine or get_postgres_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Authorization store tables created")
