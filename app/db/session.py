"""Datastore handle for the task processor process."""

import logging

from sqlalchemy.engine import Engine
from sqlmodel import create_engine, text

from app.config import get_settings

logger = logging.getLogger(__name__)

_engine: Engine | None = None


def _database_url() -> str:
    # Convert postgresql:// to postgresql+psycopg:// for psycopg v3 driver
    database_url = get_settings().DATABASE_URL
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def get_engine() -> Engine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = create_engine(_database_url(), echo=False, pool_pre_ping=True)
    return _engine


def check_database_connection() -> None:
    """Open a connection and run a trivial query.

    Raises:
        sqlalchemy.exc.SQLAlchemyError: If the datastore is unreachable
    """
    with get_engine().connect() as connection:
        connection.execute(text("SELECT 1"))
    logger.info("Datastore connected")


def close_database() -> None:
    """Dispose of the engine and its pooled connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Datastore connection closed")
