"""
Storage Package.

Durable persistence for the ledgers.

Modules:
- database: Engine, schema and transaction scopes
- models/: ORM models (the durable row contract)
- repositories/: Data access layer
"""

from storage.database import Database, create_database
from storage.repositories import LedgerRepository, RepositoryException

__all__ = [
    "Database",
    "create_database",
    "LedgerRepository",
    "RepositoryException",
]
