"""
Storage Repositories Package.

Data access layer. Every SQLAlchemy error is wrapped in a
RepositoryException (a StorageError).
"""

from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    DuplicateRecordError,
    ImmutableRecordError,
    IntegrityError,
    QueryError,
    RepositoryConnectionError,
    RepositoryException,
    TransactionError,
)
from storage.repositories.ledger import LedgerRepository

__all__ = [
    "BaseRepository",
    "LedgerRepository",
    "RepositoryException",
    "DuplicateRecordError",
    "ImmutableRecordError",
    "IntegrityError",
    "QueryError",
    "RepositoryConnectionError",
    "TransactionError",
]
