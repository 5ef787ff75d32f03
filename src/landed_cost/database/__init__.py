"""Database module for the landed-cost portal.

This module provides:
- SQLAlchemy async database connection
- User and session models
- The credential store used by the auth core
- Encrypted storage for persisted session payloads
"""

from landed_cost.database.connection import (
    close_db,
    create_tables,
    get_db,
    init_db,
)
from landed_cost.database.models import Base, StoredSession, User
from landed_cost.database.users import UserStore

__all__ = [
    # Connection
    "get_db",
    "init_db",
    "close_db",
    "create_tables",
    # Models
    "Base",
    "User",
    "StoredSession",
    # Stores
    "UserStore",
]
