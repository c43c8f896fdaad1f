"""Persistence layer for fragcache.

This module provides:
- Async engine and session factory
- The declarative base for the fragment tree table
- Alembic migrations
"""

from fragcache.persistence.db import (
    close_db,
    create_engine,
    get_engine,
    get_session_factory,
    init_db,
    session_context,
)
from fragcache.persistence.tables import Base

__all__ = [
    "Base",
    "create_engine",
    "get_engine",
    "get_session_factory",
    "session_context",
    "init_db",
    "close_db",
]
