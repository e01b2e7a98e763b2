"""
dbconverge: Declarative multi-module schema reconciliation for PostgreSQL.

Independently versioned modules each declare a partial view of a shared
schema. dbconverge merges those declarations, compares them with the live
database and applies the dependency-ordered changes needed to converge,
without touching elements no module has ever installed.
"""

__version__ = "0.1.0"
__author__ = "dbconverge Contributors"

from .exceptions import (
    DbconvergeError,
    ConfigurationError,
    DatabaseError,
    SchemaConflictError,
    ReferentialIntegrityError,
    CyclicDependencyError,
)
from .config import DbconvergeConfig
from .schema import SchemaReconciler, OwnershipLedger, merge_contributions

__all__ = [
    "__version__",
    "DbconvergeConfig",
    "DbconvergeError",
    "ConfigurationError",
    "DatabaseError",
    "SchemaConflictError",
    "ReferentialIntegrityError",
    "CyclicDependencyError",
    "SchemaReconciler",
    "OwnershipLedger",
    "merge_contributions",
]
