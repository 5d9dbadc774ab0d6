"""
MedEvidence Database Module

Database components:
- SQLAlchemy models
- Connection management
- Result stores (in-memory and PostgreSQL)
"""

from medevidence.db.models import Base, SearchResult
from medevidence.db.postgres import (
    MAX_OVERFLOW,
    POOL_RECYCLE,
    POOL_SIZE,
    check_database_health,
    close_db,
    get_db_session,
    get_engine,
    init_db,
)
from medevidence.db.store import (
    InMemoryResultStore,
    ResultNotFoundError,
    ResultStore,
    SqlResultStore,
    StoredResult,
    create_result_store,
)

__all__ = [
    # Models
    "Base",
    "SearchResult",
    # Connection
    "get_engine",
    "get_db_session",
    "init_db",
    "close_db",
    "check_database_health",
    "POOL_SIZE",
    "MAX_OVERFLOW",
    "POOL_RECYCLE",
    # Stores
    "ResultStore",
    "StoredResult",
    "ResultNotFoundError",
    "InMemoryResultStore",
    "SqlResultStore",
    "create_result_store",
]
