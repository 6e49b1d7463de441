"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
Repository-specific exceptions. All database errors are caught
and wrapped in these, and all of them are StorageErrors: fatal,
non-recoverable, and propagated to the host process.

============================================================
"""

from typing import Any, Optional

from core.exceptions import StorageError


class RepositoryException(StorageError):
    """
    Base exception for all repository operations.
    """

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[dict] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(
            f"[{repository_name}] {operation}: {message}",
            context={"repository": repository_name, "operation": operation, **self.details},
            cause=cause,
        )


class DuplicateRecordError(RepositoryException):
    """
    Raised when a unique constraint rejects an insert.
    """

    def __init__(
        self,
        repository_name: str,
        constraint_field: str,
        value: Any,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message=f"Duplicate record: {constraint_field}={value} already exists",
            repository_name=repository_name,
            operation="create",
            details={"field": constraint_field, "value": str(value)},
            cause=cause,
        )
        self.constraint_field = constraint_field
        self.value = value


class IntegrityError(RepositoryException):
    """
    Raised when other database integrity constraints are violated.
    """

    def __init__(
        self,
        repository_name: str,
        operation: str,
        message: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message=f"Integrity constraint violated: {message}",
            repository_name=repository_name,
            operation=operation,
            cause=cause,
        )


class RepositoryConnectionError(RepositoryException):
    """
    Raised when the database cannot be reached.
    """

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message=f"Database connection failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error},
            cause=cause,
        )


class QueryError(RepositoryException):
    """
    Raised when a statement fails for any other reason.
    """

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message=f"Query failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error},
            cause=cause,
        )


class TransactionError(RepositoryException):
    """
    Raised when commit or rollback fails.
    """

    def __init__(
        self,
        repository_name: str,
        phase: str,
        original_error: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message=f"Transaction {phase} failed: {original_error}",
            repository_name=repository_name,
            operation=phase,
            details={"phase": phase, "original_error": original_error},
            cause=cause,
        )
        self.phase = phase


class ImmutableRecordError(RepositoryException):
    """
    Raised when a save would rewrite an append-only row.
    """

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        attempted_operation: str,
    ) -> None:
        super().__init__(
            message=f"Cannot {attempted_operation} immutable record {record_id}",
            repository_name=repository_name,
            operation=attempted_operation,
            details={"record_id": str(record_id)},
        )
        self.record_id = record_id
        self.attempted_operation = attempted_operation


__all__ = [
    "RepositoryException",
    "DuplicateRecordError",
    "IntegrityError",
    "RepositoryConnectionError",
    "QueryError",
    "TransactionError",
    "ImmutableRecordError",
]
