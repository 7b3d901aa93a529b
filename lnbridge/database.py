"""
Database connection and session management for lnbridge.

PostgreSQL in production, SQLite for tests and single-node installs. Redis
is optional and only backs the rate limiter when REDIS_URL is set.
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Mapping, Optional

import redis
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from lnbridge.config import get_database_url
from lnbridge.models import Base

logger = logging.getLogger(__name__)

# Global database engine and session factory
_engine = None
_SessionFactory = None
_redis_client = None


def init_database(db_url: str, echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url: SQLAlchemy connection URL
        echo: If True, log all SQL statements
        create_tables: If True, create all tables (use migrations in production)
    """
    global _engine, _SessionFactory

    if _engine is not None:
        logger.warning("Database already initialized")
        return

    engine_kwargs = {"echo": echo}

    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(
            {
                "pool_pre_ping": True,
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 3600,
                "connect_args": {"connect_timeout": 10, "options": "-c timezone=utc"},
            }
        )

    _engine = create_engine(db_url, **engine_kwargs)

    @event.listens_for(_engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        logger.debug("New database connection established")

    session_factory = sessionmaker(bind=_engine)
    _SessionFactory = scoped_session(session_factory)

    if create_tables:
        logger.warning("Creating database tables - use migrations in production!")
        Base.metadata.create_all(_engine)

    logger.info(f"Database initialized: {db_url.split('@')[1] if '@' in db_url else db_url}")


def get_engine():
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def get_session() -> Session:
    """
    Get a database session.

    Raises:
        RuntimeError: If database not initialized
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope for database operations.

    Usage:
        with session_scope() as session:
            user = session.query(User).filter_by(id=user_id).first()
            session.add(new_object)
            # Automatically commits on success, rolls back on error

    Yields:
        Database session
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        session.close()


def remove_session() -> None:
    """Discard the current thread's session (end of request)."""
    if _SessionFactory is not None:
        _SessionFactory.remove()


def close_database() -> None:
    """
    Close database connections and clean up.
    """
    global _engine, _SessionFactory

    if _SessionFactory:
        _SessionFactory.remove()
        _SessionFactory = None

    if _engine:
        _engine.dispose()
        _engine = None

    logger.info("Database connections closed")


def check_database_health() -> dict:
    """
    Check database connection health.

    Returns:
        Dictionary with health status
    """
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))

        return {"status": "healthy", "database": _engine.dialect.name, "connected": True}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "connected": False, "error": str(e)}


# ============================================================================
# Redis Connection Management
# ============================================================================


def init_redis(redis_url: Optional[str]) -> None:
    """
    Initialize the Redis client. Without a URL the app runs Redis-free.
    """
    global _redis_client

    if _redis_client is not None:
        logger.warning("Redis already initialized")
        return

    if not redis_url:
        logger.info("REDIS_URL not set; rate limiter uses in-memory storage")
        return

    try:
        _redis_client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        _redis_client.ping()
        logger.info("Redis initialized")
    except redis.RedisError as e:
        logger.error(f"Failed to initialize Redis: {e}")
        _redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """
    Get Redis client instance, or None if not available.
    """
    return _redis_client


def close_redis() -> None:
    global _redis_client

    if _redis_client:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


def check_redis_health() -> dict:
    """
    Check Redis connection health.

    Returns:
        Dictionary with health status
    """
    if _redis_client is None:
        return {"status": "unavailable", "cache": "redis", "connected": False}

    try:
        _redis_client.ping()
        info = _redis_client.info()

        return {
            "status": "healthy",
            "cache": "redis",
            "connected": True,
            "version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "cache": "redis", "connected": False, "error": str(e)}


# ============================================================================
# Initialization Helper
# ============================================================================


def init_all(config: Mapping[str, Any], echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize both database and Redis from the application config.

    SQLite databases get their tables created automatically.
    """
    db_url = get_database_url(config)
    if db_url.startswith("sqlite"):
        create_tables = True

    init_database(db_url, echo=echo, create_tables=create_tables)
    init_redis(config.get("REDIS_URL"))

    logger.info("All database connections initialized")


def close_all() -> None:
    """
    Close all database connections.
    """
    close_database()
    close_redis()

    logger.info("All database connections closed")


def get_health_status() -> dict:
    """
    Get health status of all database connections.
    """
    return {"database": check_database_health(), "redis": check_redis_health()}
