#deployment_engine\infrastructure\postgres\database.py

"""SQLAlchemy engine and session factory for the record store."""

import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from deployment_engine.infrastructure.postgres.config import get_database_settings

logger = logging.getLogger(__name__)


# ============================================
# Base for ORM models
# ============================================
Base = declarative_base()


# ============================================
# Engine configuration
# ============================================
def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create the engine for a database URL (settings by default).

    sqlite URLs (local runs, tests) get a plain engine usable from the
    controller's worker threads; PostgreSQL gets the configured pool.
    """
    if database_url and database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})

    settings = get_database_settings()
    url = database_url or settings.database_url
    if settings.is_sqlite and database_url is None:
        return create_engine(url, echo=settings.echo_sql, connect_args={"check_same_thread": False})

    engine = create_engine(
        url,
        echo=settings.echo_sql,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )

    @event.listens_for(engine, "connect")
    def set_search_path(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET search_path TO public")
        cursor.close()

    logger.info(f"[postgres] engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


@lru_cache
def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    return create_db_engine()


# ============================================
# Session factory function
# ============================================
def get_session_factory(engine_instance: Optional[Engine] = None) -> sessionmaker:
    """
    Get a session factory bound to the given engine.

    If no engine provided, uses the process-wide engine.
    This allows tests to inject their own engine.
    """
    if engine_instance is None:
        engine_instance = get_engine()

    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine_instance,
        expire_on_commit=False
    )


# ============================================
# Database initialization
# ============================================
def init_db(engine_instance: Optional[Engine] = None) -> None:
    """Create all tables (for testing only - use Alembic in production)."""
    # Registers the ORM classes on Base.metadata
    from deployment_engine.infrastructure.postgres import models  # noqa: F401

    if engine_instance is None:
        engine_instance = get_engine()
    Base.metadata.create_all(bind=engine_instance)


def drop_db(engine_instance: Optional[Engine] = None) -> None:
    """Drop all tables (for testing only)."""
    if engine_instance is None:
        engine_instance = get_engine()
    Base.metadata.drop_all(bind=engine_instance)
