"""Database models and storage layer."""

from .database import (
    Base,
    drop_tables,
    get_database_engine,
    get_session_factory,
    init_database,
    reset_database_engine,
)
from .models import GraphModel, LogEntryModel, RunModel

__all__ = [
    "Base",
    "get_database_engine",
    "get_session_factory",
    "init_database",
    "reset_database_engine",
    "drop_tables",
    "GraphModel",
    "RunModel",
    "LogEntryModel",
]
