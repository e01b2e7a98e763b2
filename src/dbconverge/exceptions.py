"""
Exception classes for dbconverge.
"""

from typing import Any, Dict, Iterable, List, Optional


class DbconvergeError(Exception):
    """Base exception for all dbconverge errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(DbconvergeError):
    """Raised when there's an error in configuration."""

    pass


class DeclarationError(ConfigurationError):
    """Raised when a module declaration document is invalid."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details = {"source": source} if source else None
        super().__init__(message, details, cause)
        self.source = source


class DatabaseError(DbconvergeError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when there's an error establishing or maintaining database connections."""

    pass


class DatabaseConfigurationError(DatabaseError):
    """Raised when there's an error in database configuration."""

    pass


class LockError(DatabaseError):
    """Raised when the catalog advisory lock cannot be acquired."""

    def __init__(self, key: int, timeout_seconds: float) -> None:
        super().__init__(
            f"Could not acquire catalog lock within {timeout_seconds}s; "
            "another reconciliation is probably running",
            {"lock_key": key},
        )
        self.key = key
        self.timeout_seconds = timeout_seconds


class SchemaError(DbconvergeError):
    """Raised when there's an error with schema reconciliation."""

    pass


class SchemaConflictError(SchemaError):
    """Raised when two module contributions disagree on one element."""

    def __init__(
        self,
        element_id: Any,
        first_source: str,
        conflicting_source: str,
        reason: Optional[str] = None,
    ) -> None:
        message = (
            f"Conflicting definitions for {element_id}: "
            f"module '{conflicting_source}' disagrees with '{first_source}'"
        )
        if reason:
            message += f" ({reason})"
        super().__init__(
            message,
            {
                "element": str(element_id),
                "first_source": first_source,
                "conflicting_source": conflicting_source,
            },
        )
        self.element_id = element_id
        self.first_source = first_source
        self.conflicting_source = conflicting_source


class ReferentialIntegrityError(SchemaError):
    """Raised when a declared reference has no valid target."""

    def __init__(
        self,
        element_id: Any,
        reason: str,
        modules: Optional[Iterable[str]] = None,
    ) -> None:
        self.element_id = element_id
        self.modules: List[str] = sorted(modules or [])
        details: Dict[str, Any] = {"element": str(element_id)}
        if self.modules:
            details["modules"] = ",".join(self.modules)
        super().__init__(f"Broken reference in {element_id}: {reason}", details)
        self.reason = reason


class CyclicDependencyError(SchemaError):
    """Raised when plan operations form a cycle that cannot be split."""

    def __init__(
        self, element_ids: Iterable[Any], modules: Optional[Iterable[str]] = None
    ) -> None:
        self.element_ids = sorted(element_ids)
        self.modules: List[str] = sorted(modules or [])
        details: Dict[str, Any] = {"elements": ", ".join(str(e) for e in self.element_ids)}
        message = "Unresolvable dependency cycle between operations"
        if self.modules:
            details["modules"] = ",".join(self.modules)
            message += f" of modules {', '.join(self.modules)}"
        super().__init__(message, details)


class ExecutionError(SchemaError):
    """Raised when a DDL step fails against the live store."""

    def __init__(
        self,
        operation: Any,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Failed to execute {operation}",
            {"element": str(getattr(operation, "element_id", operation))},
            cause,
        )
        self.operation = operation


class LedgerError(SchemaError):
    """Raised when the ownership ledger cannot be read or written."""

    pass
