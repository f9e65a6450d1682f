"""Database module: async SQLAlchemy engine, sessions and ORM models."""

from .connection import Database, get_async_database_url
from .orm import Base, Collection, PriceRecord, SelectionPeriod, SyncLog


__all__ = [
    "Database",
    "get_async_database_url",
    "Base",
    "Collection",
    "PriceRecord",
    "SelectionPeriod",
    "SyncLog",
]
