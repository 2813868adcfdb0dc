"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine management
- Connection pooling with sane defaults
- Test database support
- The `documents` table backing the SQL document store
"""
from typing import Optional
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, JSON, Index, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func
import logging
import os

from dreamstate.core.config import settings


logger = logging.getLogger("dreamstate")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine
_engine = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def build_engine(url: str):
    """Create an engine for `url`; SQLite in-memory URLs share one connection."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _engine = build_engine(url)

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def check_connection(engine=None) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        eng = engine or get_engine()
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# One row per document. `collection` is the parent path, `collection_id` its
# last segment (for collection-group listings such as every user's queue).
documents = Table(
    'documents',
    metadata,
    Column('path', String(512), primary_key=True),
    Column('collection', String(512), nullable=False),
    Column('collection_id', String(128), nullable=False),
    Column('data', JSON, nullable=False),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_documents_collection', 'collection', 'path'),
    Index('idx_documents_collection_id', 'collection_id', 'path'),
)
