"""
Database and Redis connections for FlowPay.

The transfer store runs on PostgreSQL in production (SQLite for local runs
and tests). Redis is optional; when present it backs rate limiting and the
single-flight lock around the expiry sweep.
"""

import logging
from typing import Any, Dict, Optional

import redis
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from flowpay.config import get_config
from flowpay.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionFactory = None
_redis_client: Optional[redis.Redis] = None


def get_database_url() -> str:
    """DATABASE_URL, or a PostgreSQL URL assembled from the DB_* settings."""
    config = get_config()
    if config.get("DATABASE_URL"):
        return config["DATABASE_URL"]

    return "postgresql://{user}:{password}@{host}:{port}/{name}".format(
        user=config.get("DB_USER", "flowpay"),
        password=config.get("DB_PASSWORD", "flowpay"),
        host=config.get("DB_HOST", "localhost"),
        port=config.get("DB_PORT", 5432),
        name=config.get("DB_NAME", "flowpay"),
    )


def _redact(db_url: str) -> str:
    return db_url.rsplit("@", 1)[-1] if "@" in db_url else db_url.split(":", 1)[0]


def build_engine(db_url: str, echo: bool = False) -> Engine:
    """Create an engine with pooling suited to the backend."""
    options: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}

    if db_url.startswith("sqlite"):
        # In-memory SQLite must share one connection or each checkout sees an empty schema
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
            options["poolclass"] = StaticPool
    else:
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,
            # expiry comparisons assume the session runs in UTC
            connect_args={"connect_timeout": 10, "options": "-c timezone=utc"},
        )

    engine = create_engine(db_url, **options)

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug(f"Opened transfer store connection to {_redact(db_url)}")

    return engine


def init_database(echo: bool = False, create_tables: bool = False, db_url: Optional[str] = None) -> None:
    """
    Initialize the global engine and scoped session factory.

    Args:
        echo: Log every SQL statement
        create_tables: Create the schema on startup (SQLite always does)
        db_url: Override for the configured database URL
    """
    global _engine, _SessionFactory

    if _engine is not None:
        logger.warning("Transfer store already initialized")
        return

    db_url = db_url or get_database_url()
    _engine = build_engine(db_url, echo=echo)
    _SessionFactory = scoped_session(sessionmaker(bind=_engine, expire_on_commit=False))

    is_sqlite = db_url.startswith("sqlite")
    if create_tables or is_sqlite:
        if not is_sqlite:
            logger.warning("Creating transfer tables at startup - use migrations in production!")
        Base.metadata.create_all(_engine)

    logger.info(f"Transfer store initialized: {_redact(db_url)}")


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def get_session_factory():
    """
    Return the scoped session factory the transfer store opens sessions from.

    Raises:
        RuntimeError: If database not initialized
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _SessionFactory


def close_database() -> None:
    global _engine, _SessionFactory

    if _SessionFactory is not None:
        _SessionFactory.remove()
        _SessionFactory = None
    if _engine is not None:
        _engine.dispose()
        _engine = None
    logger.info("Transfer store connections closed")


def check_database_health() -> dict:
    if _engine is None:
        return {"status": "unavailable", "connected": False, "error": "Database not initialized"}
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "connected": False, "error": str(e)}
    return {"status": "healthy", "database": _engine.dialect.name, "connected": True}


# ============================================================================
# Redis (rate limiting + sweep lock)
# ============================================================================


def _redis_from_config(config) -> Optional[redis.Redis]:
    common = {"decode_responses": True, "socket_connect_timeout": 5, "socket_timeout": 5}
    if config.get("REDIS_URL"):
        return redis.Redis.from_url(config["REDIS_URL"], **common)
    if config.get("REDIS_HOST"):
        return redis.Redis(
            host=config["REDIS_HOST"],
            port=config.get("REDIS_PORT", 6379),
            password=config.get("REDIS_PASSWORD"),
            db=config.get("REDIS_DB", 0),
            max_connections=50,
            health_check_interval=30,
            **common,
        )
    return None


def init_redis() -> None:
    """Connect to Redis if REDIS_URL or REDIS_HOST is configured."""
    global _redis_client

    if _redis_client is not None:
        logger.warning("Redis already initialized")
        return

    client = _redis_from_config(get_config())
    if client is None:
        logger.info("Redis not configured; expiry sweeps are not serialised across workers")
        return

    try:
        client.ping()
    except redis.RedisError as e:
        logger.error(f"Failed to initialize Redis: {e}")
        logger.warning("Continuing without Redis; expiry sweeps are not serialised across workers")
        return

    _redis_client = client
    logger.info("Redis initialized")


def get_redis() -> Optional[redis.Redis]:
    """Redis client, or None when Redis is not configured or unreachable."""
    return _redis_client


def close_redis() -> None:
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


def check_redis_health() -> dict:
    if _redis_client is None:
        return {"status": "unavailable", "connected": False, "error": "Redis not initialized"}
    try:
        info = _redis_client.info()
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "connected": False, "error": str(e)}
    return {"status": "healthy", "connected": True, "version": info.get("redis_version")}


def init_all(echo: bool = False, create_tables: bool = False, db_url: Optional[str] = None) -> None:
    """Initialize the transfer store and, when configured, Redis."""
    init_database(echo=echo, create_tables=create_tables, db_url=db_url)
    init_redis()


def close_all() -> None:
    close_database()
    close_redis()


def get_health_status() -> dict:
    """Connection health for the ``init-db`` command and the setup script."""
    return {"database": check_database_health(), "redis": check_redis_health()}
