"""
Database connection management.

Engines and session factories are created explicitly and handed to the
components that need them; nothing here is cached at module level.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a database engine.

    SQLite URLs get check_same_thread disabled (sessions are used from
    worker threads) and in-memory databases share a single connection.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
    else:
        engine = create_engine(
            database_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            echo=echo,
        )
    logger.info(f"Database engine created: {engine.url.render_as_string(hide_password=True)}")
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for database sessions: commit on success, rollback on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_connection(engine: Engine) -> bool:
    """Test database connection."""
    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            row = result.fetchone()
            if row and row[0] == 1:
                logger.info("Database connection test: OK")
                return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
    return False
