"""
Database connection management with connection pooling.

This module provides the engine and session factory that back the
document store. PostgreSQL gets a pooled engine; SQLite (local runs
and tests) gets a plain one that can be shared across threads.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Configured Engine
    """
    if database_url.startswith("sqlite"):
        # Exercise lookups run on worker threads, so connections must be
        # usable outside the thread that opened them.
        db_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.DEBUG,
        )
    else:
        db_engine = create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=settings.DB_POOL_SIZE,  # Number of connections to maintain
            max_overflow=settings.DB_MAX_OVERFLOW,  # Additional connections beyond pool_size
            pool_timeout=settings.DB_POOL_TIMEOUT,  # Seconds to wait for connection
            pool_recycle=settings.DB_POOL_RECYCLE,  # Recycle connections after this many seconds
            pool_pre_ping=True,  # Verify connections before using
            echo=settings.DEBUG,  # Log SQL queries in debug mode
        )

    @event.listens_for(db_engine, "checkout")
    def receive_checkout(dbapi_conn, connection_record, connection_proxy):
        """Log when connection is checked out from pool."""
        logger.debug("Connection checked out from pool")

    @event.listens_for(db_engine, "checkin")
    def receive_checkin(dbapi_conn, connection_record):
        """Log when connection is returned to pool."""
        logger.debug("Connection returned to pool")

    return db_engine


def create_session_factory(db_engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=db_engine,
        expire_on_commit=False,  # Prevent lazy loading issues
    )


engine = create_db_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = create_session_factory(engine)


def init_db(db_engine: Engine = None) -> None:
    """
    Create the document table if it does not exist yet.

    Args:
        db_engine: Engine to create tables on (defaults to the global engine)
    """
    import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=db_engine or engine)


def check_db_connection(db_engine: Engine = None) -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with (db_engine or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
