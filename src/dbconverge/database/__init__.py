"""
Database integration package for dbconverge.

This package provides:
- Async PostgreSQL connection pooling
- Live schema introspection
- The catalog-wide advisory lock
"""

from .connection import ConnectionConfig, ConnectionPool
from .introspection import SchemaIntrospector
from .locking import CatalogLock, default_lock_key

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "SchemaIntrospector",
    "CatalogLock",
    "default_lock_key",
]
