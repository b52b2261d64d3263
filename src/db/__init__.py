"""Database module."""

from src.db.connection import (
    create_db_engine,
    get_session_factory,
    session_scope,
    check_connection,
)

__all__ = [
    "create_db_engine",
    "get_session_factory",
    "session_scope",
    "check_connection",
]
